"""
UTILITIES PACKAGE
=================

Helpers used by the services (no HTTP, no business logic):

  time_info - utc_now_iso() for stored timestamps, monotonic_ms()/elapsed_ms() for stream timings.
"""
