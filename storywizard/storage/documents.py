"""Path-addressed JSON documents with collection queries and field sentinels.

A document path has an even number of segments ("stories/abc"), a
collection path an odd number ("stories/abc/storybooks"). Each document
is one JSON file; its subcollections live in a sibling directory:

  data/stories/abc.json
  data/stories/abc/storybooks/xyz.json

Writes that read the current value first (merge, update, sentinels) hold
a process-wide lock so counters stay consistent across concurrent tasks.
"""

import copy
import json
import threading
from pathlib import Path
from typing import Any

from .core import data_dir, new_id, split_path

_lock = threading.RLock()


class DocumentNotFoundError(LookupError):
    """Raised when updating a document that does not exist."""


class Increment:
    """Add `amount` to the stored number (missing counts as 0)."""

    def __init__(self, amount: int | float = 1) -> None:
        self.amount = amount

    def __repr__(self) -> str:
        return f"Increment({self.amount})"


class ArrayUnion:
    """Append values not already present in the stored list."""

    def __init__(self, values: list[Any]) -> None:
        self.values = list(values)

    def __repr__(self) -> str:
        return f"ArrayUnion({self.values!r})"


# ── Paths ────────────────────────────────────────────────


def _doc_file(path: str) -> Path:
    segments = split_path(path)
    if len(segments) % 2 != 0:
        raise ValueError(f"Not a document path: {path}")
    return data_dir().joinpath(*segments[:-1]) / f"{segments[-1]}.json"


def _collection_dir(path: str) -> Path:
    segments = split_path(path)
    if len(segments) % 2 != 1:
        raise ValueError(f"Not a collection path: {path}")
    return data_dir().joinpath(*segments)


def _read(file: Path) -> dict[str, Any] | None:
    if not file.is_file():
        return None
    return json.loads(file.read_text())


def _write(file: Path, data: dict[str, Any]) -> None:
    file.parent.mkdir(parents=True, exist_ok=True)
    tmp = file.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(data, indent=2))
    tmp.replace(file)


# ── Sentinels and merging ────────────────────────────────


def _resolve(current: Any, value: Any) -> Any:
    if isinstance(value, Increment):
        base = current if isinstance(current, (int, float)) else 0
        return base + value.amount
    if isinstance(value, ArrayUnion):
        merged = list(current) if isinstance(current, list) else []
        for v in value.values:
            if v not in merged:
                merged.append(v)
        return merged
    if isinstance(value, dict):
        return {k: _resolve(None, v) for k, v in value.items()}
    return copy.deepcopy(value)


def _deep_merge(target: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = _resolve(target.get(key), value)
    return target


def _set_field(doc: dict[str, Any], dotted: str, value: Any) -> None:
    """Set a dotted field path, creating intermediate maps."""
    parts = dotted.split(".")
    node = doc
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = _resolve(node.get(parts[-1]), value)


# ── Documents ────────────────────────────────────────────


def get_doc(path: str) -> dict[str, Any] | None:
    """Return the document's data, or None if it does not exist."""
    return _read(_doc_file(path))


def set_doc(path: str, data: dict[str, Any], merge: bool = False) -> dict[str, Any]:
    """Create or overwrite a document. With merge=True, maps are deep-merged."""
    file = _doc_file(path)
    with _lock:
        current = _read(file) if merge else None
        doc = _deep_merge(current or {}, data)
        _write(file, doc)
    return doc


def update_doc(path: str, fields: dict[str, Any]) -> dict[str, Any]:
    """Apply dotted-path field updates to an existing document."""
    file = _doc_file(path)
    with _lock:
        doc = _read(file)
        if doc is None:
            raise DocumentNotFoundError(f"Document not found: {path}")
        for key, value in fields.items():
            _set_field(doc, key, value)
        _write(file, doc)
    return doc


def add_doc(collection: str, data: dict[str, Any]) -> str:
    """Create a document with a generated id. Returns the id."""
    doc_id = new_id()
    set_doc(f"{collection}/{doc_id}", data)
    return doc_id


def delete_doc(path: str) -> bool:
    """Delete a document file. Subcollections are left in place."""
    file = _doc_file(path)
    with _lock:
        if not file.is_file():
            return False
        file.unlink()
    return True


# ── Collections ──────────────────────────────────────────


def list_docs(
    collection: str,
    where: dict[str, Any] | None = None,
    order_by: str | None = None,
) -> list[dict[str, Any]]:
    """List documents as dicts with an injected "id" key.

    `where` filters by field equality; `order_by` sorts ascending with
    missing values last.
    """
    folder = _collection_dir(collection)
    if not folder.is_dir():
        return []
    docs: list[dict[str, Any]] = []
    for file in sorted(folder.glob("*.json")):
        data = _read(file)
        if data is None:
            continue
        if where and any(data.get(k) != v for k, v in where.items()):
            continue
        docs.append({"id": file.stem, **data})
    if order_by:
        docs.sort(key=lambda d: (d.get(order_by) is None, d.get(order_by) or 0))
    return docs


def get_docs(collection: str, ids: list[str]) -> dict[str, dict[str, Any]]:
    """Batch-fetch documents by id. Missing ids are omitted."""
    found: dict[str, dict[str, Any]] = {}
    for doc_id in dict.fromkeys(ids):
        try:
            data = get_doc(f"{collection}/{doc_id}")
        except ValueError:
            continue
        if data is not None:
            found[doc_id] = {"id": doc_id, **data}
    return found


def find_by_field(collection: str, field: str, values: list[Any]) -> dict[Any, dict[str, Any]]:
    """Map each value to the first document whose `field` equals it."""
    wanted = set(values)
    found: dict[Any, dict[str, Any]] = {}
    if not wanted:
        return found
    for doc in list_docs(collection):
        value = doc.get(field)
        if isinstance(value, (str, int)) and value in wanted and value not in found:
            found[value] = doc
    return found
