"""
DOCUMENT STORE MODULE
=====================

A small schemaless document store backed by JSON files. Each collection is a
folder under database/ and each document is one <_id>.json file inside it, so
a transcript can be opened and read by hand during class.

OPERATIONS (named after their MongoDB counterparts):
  insert_one(doc)                              -> new _id
  find_one(filter, projection)                 -> document or None
  find(filter, projection, sort, skip, limit)  -> list of documents
  count_documents(filter)                      -> int
  update_one(filter, set_fields, push)         -> True if a document matched
  delete_one(filter)                           -> True if a document was removed
  create_index(keys, unique)                   -> in-memory secondary index

FILTERS:
  A dict of field -> expected value. A compiled regular expression as the
  expected value matches string fields with re.search. All fields must match.

CONSISTENCY:
  Writes to one collection are serialized by an asyncio.Lock and every file is
  replaced atomically (write temp file, then os.replace), so an update such as
  "push one message onto messages" never loses a concurrent push. Reads take
  no lock. File IO runs in the threadpool so the event loop keeps streaming.
"""

import asyncio
import json
import logging
import os
import re
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from starlette.concurrency import run_in_threadpool

from app.errors import DuplicateKeyError, PersistenceError

logger = logging.getLogger("ClassChat")

Document = Dict[str, Any]
Filter = Mapping[str, Any]

ASCENDING = 1
DESCENDING = -1


def _matches(doc: Document, query: Filter) -> bool:
    for field, expected in query.items():
        value = doc.get(field)
        if isinstance(expected, re.Pattern):
            if not isinstance(value, str) or not expected.search(value):
                return False
        elif value != expected:
            return False
    return True


def _project(doc: Document, projection: Optional[Mapping[str, int]]) -> Document:
    if not projection:
        return dict(doc)
    included = [field for field, flag in projection.items() if flag]
    if included:
        return {k: v for k, v in doc.items() if k in included or k == "_id"}
    return {k: v for k, v in doc.items() if k not in projection}


def _sort_key(field: str):
    # None sorts before any value instead of raising on comparison.
    return lambda doc: (doc.get(field) is not None, doc.get(field))


class _Index:
    """Maps a tuple of field values to the _ids of the documents holding them."""

    def __init__(self, keys: Tuple[str, ...], unique: bool):
        self.keys = keys
        self.unique = unique
        self.entries: Dict[Tuple[Any, ...], Set[str]] = {}

    def key_for(self, doc: Mapping[str, Any]) -> Tuple[Any, ...]:
        return tuple(doc.get(k) for k in self.keys)

    def covers(self, query: Filter) -> bool:
        return all(k in query and not isinstance(query[k], re.Pattern) for k in self.keys)

    def add(self, doc: Document) -> None:
        self.entries.setdefault(self.key_for(doc), set()).add(doc["_id"])

    def remove(self, doc: Document) -> None:
        ids = self.entries.get(self.key_for(doc))
        if ids is not None:
            ids.discard(doc["_id"])
            if not ids:
                del self.entries[self.key_for(doc)]

    def conflicts(self, doc: Document) -> bool:
        if not self.unique:
            return False
        holders = self.entries.get(self.key_for(doc), set())
        return bool(holders - {doc.get("_id")})


class JsonCollection:
    """One folder of JSON documents."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.name = self.directory.name
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self._indexes: Dict[Tuple[str, ...], _Index] = {}

    # ------------------------------------------------------------------
    # File helpers (blocking; always called through run_in_threadpool)
    # ------------------------------------------------------------------

    def _path(self, doc_id: str) -> Path:
        return self.directory / f"{doc_id}.json"

    def _read_file(self, path: Path) -> Optional[Document]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            # Deleted between listing and reading.
            return None

    def _read_ids(self, ids: Iterable[str]) -> List[Document]:
        docs = []
        for doc_id in ids:
            doc = self._read_file(self._path(doc_id))
            if doc is not None:
                docs.append(doc)
        return docs

    def _read_all(self) -> List[Document]:
        return self._read_ids(sorted(p.stem for p in self.directory.glob("*.json")))

    def _write_file(self, doc: Document) -> None:
        path = self._path(doc["_id"])
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(doc, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)

    def _delete_file(self, doc_id: str) -> None:
        try:
            self._path(doc_id).unlink()
        except FileNotFoundError:
            pass

    # ------------------------------------------------------------------
    # Internal async helpers
    # ------------------------------------------------------------------

    async def _io(self, fn, *args):
        try:
            return await run_in_threadpool(fn, *args)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"{self.name}: {e}") from e

    async def _candidates(self, query: Filter) -> List[Document]:
        for index in self._indexes.values():
            if index.covers(query):
                ids = index.entries.get(index.key_for(query), set())
                return await self._io(self._read_ids, sorted(ids))
        return await self._io(self._read_all)

    async def _first_match(self, query: Filter) -> Optional[Document]:
        for doc in await self._candidates(query):
            if _matches(doc, query):
                return doc
        return None

    def _check_unique(self, doc: Document) -> None:
        for index in self._indexes.values():
            if index.conflicts(doc):
                raise DuplicateKeyError(
                    f"{self.name}: duplicate key {dict(zip(index.keys, index.key_for(doc)))}"
                )

    def _reindex(self, old: Optional[Document], new: Optional[Document]) -> None:
        for index in self._indexes.values():
            if old is not None:
                index.remove(old)
            if new is not None:
                index.add(new)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_index(self, keys: Sequence[str], unique: bool = False) -> None:
        """Build (or rebuild) an index over keys from the documents on disk. Idempotent."""
        index = _Index(tuple(keys), unique)
        async with self._lock:
            for doc in await self._io(self._read_all):
                index.add(doc)
            self._indexes[index.keys] = index
        logger.info("Index on %s%s ready (%d keys)", self.name, list(index.keys), len(index.entries))

    async def insert_one(self, document: Mapping[str, Any]) -> str:
        doc = dict(document)
        doc.setdefault("_id", uuid.uuid4().hex)
        async with self._lock:
            self._check_unique(doc)
            await self._io(self._write_file, doc)
            self._reindex(None, doc)
        return doc["_id"]

    async def find_one(self, query: Filter, projection: Optional[Mapping[str, int]] = None) -> Optional[Document]:
        doc = await self._first_match(query)
        return _project(doc, projection) if doc is not None else None

    async def find(
        self,
        query: Filter,
        projection: Optional[Mapping[str, int]] = None,
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> List[Document]:
        """All matching documents; sort is a list of (field, ASCENDING|DESCENDING); limit 0 means no limit."""
        docs = [d for d in await self._candidates(query) if _matches(d, query)]
        for field, direction in reversed(list(sort or [])):
            docs.sort(key=_sort_key(field), reverse=direction == DESCENDING)
        docs = docs[max(skip, 0):]
        if limit > 0:
            docs = docs[:limit]
        return [_project(d, projection) for d in docs]

    async def count_documents(self, query: Filter) -> int:
        return sum(1 for d in await self._candidates(query) if _matches(d, query))

    async def update_one(
        self,
        query: Filter,
        set_fields: Optional[Mapping[str, Any]] = None,
        push: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Update the first matching document: overwrite set_fields and append each
        value in push to its array field. Returns False when nothing matched.
        """
        async with self._lock:
            old = await self._first_match(query)
            if old is None:
                return False
            new = dict(old)
            new.update(set_fields or {})
            for field, value in (push or {}).items():
                new[field] = list(new.get(field) or []) + [value]
            self._check_unique(new)
            await self._io(self._write_file, new)
            self._reindex(old, new)
        return True

    async def delete_one(self, query: Filter) -> bool:
        async with self._lock:
            doc = await self._first_match(query)
            if doc is None:
                return False
            await self._io(self._delete_file, doc["_id"])
            self._reindex(doc, None)
        return True


class JsonDocumentStore:
    """A database folder; collections are created lazily on first access."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._collections: Dict[str, JsonCollection] = {}

    def collection(self, name: str) -> JsonCollection:
        if name not in self._collections:
            self._collections[name] = JsonCollection(self.root / name)
        return self._collections[name]
