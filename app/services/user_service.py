"""
USER SERVICE MODULE
===================

Registration and password checks for the simple email + password login.
Accounts live in the users collection with a unique email index; passwords
are stored as bcrypt hashes only.
"""

import logging
import uuid

import bcrypt
from starlette.concurrency import run_in_threadpool

from app.errors import AuthError, ConflictError, DuplicateKeyError, InvalidRequestError
from app.models import AppUser
from app.services.document_store import JsonDocumentStore
from app.utils.time_info import utc_now_iso
from config import MIN_PASSWORD_LENGTH, USERS_COLLECTION

logger = logging.getLogger("ClassChat")


def _password_bytes(password: str) -> bytes:
    # bcrypt only looks at the first 72 bytes and newer releases reject longer input.
    return password.encode("utf-8")[:72]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(_password_bytes(plain_password), hashed_password.encode("utf-8"))
    except ValueError:
        # Malformed hash on disk.
        return False


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


# Checked against when the email is unknown so both paths cost one bcrypt round.
_DUMMY_PASSWORD_HASH = hash_password("classchat-unknown-user")


class UserService:
    def __init__(self, store: JsonDocumentStore):
        self.users = store.collection(USERS_COLLECTION)

    async def ensure_indexes(self) -> None:
        await self.users.create_index(["email"], unique=True)
        await self.users.create_index(["user_id"], unique=True)

    async def register(self, email: str, password: str) -> AppUser:
        """
        Create an account.

        Raises:
            InvalidRequestError: email missing/malformed or password shorter than 6 characters.
            ConflictError: the email is already registered.
        """
        email = normalize_email(email)
        if not email or "@" not in email or not password or len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidRequestError("Invalid email or password too short")

        if await self.users.find_one({"email": email}) is not None:
            raise ConflictError("Email already registered")

        now = utc_now_iso()
        user = AppUser(
            user_id=str(uuid.uuid4()),
            email=email,
            password_hash=await run_in_threadpool(hash_password, password),
            created_at=now,
            updated_at=now,
        )
        try:
            await self.users.insert_one(user.model_dump())
        except DuplicateKeyError as e:
            # Lost a race with a parallel registration of the same email.
            raise ConflictError("Email already registered") from e
        logger.info("Registered user %s", user.user_id)
        return user

    async def authenticate(self, email: str, password: str) -> AppUser:
        """Return the account for valid credentials; AuthError otherwise (no hint which part was wrong)."""
        email = normalize_email(email)
        if not email or not password:
            raise AuthError("Invalid email or password")
        doc = await self.users.find_one({"email": email})
        if doc is None:
            await run_in_threadpool(verify_password, password, _DUMMY_PASSWORD_HASH)
            raise AuthError("Invalid email or password")
        user = AppUser.model_validate(doc)
        if not await run_in_threadpool(verify_password, password, user.password_hash):
            raise AuthError("Invalid email or password")
        return user
