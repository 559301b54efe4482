"""
Record store backed by JSON documents.

Every collection has a static snapshot at DATA_DIR/<name>.json and a local
cache at CACHE_DIR/<name>.json. Once the cache holds records it is the system
of record and the snapshot is no longer consulted. Collections are always read
and written whole; the last writer wins.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel

from schemas import Log, Notification, PublicProfile, Session

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
CACHE_DIR = Path(os.getenv("CACHE_DIR", str(BASE_DIR / ".cache")))

COLLECTIONS = ("users", "products", "categories", "orders", "coupons", "notifications", "logs")
SESSIONS_FILE = "sessions.json"


def _path(directory: Path, collection: str) -> Path:
    if collection not in COLLECTIONS:
        raise KeyError(f"Unknown collection: {collection}")
    return directory / f"{collection}.json"


def _read_array(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Could not read %s: %s", path, e)
        return []
    if not isinstance(data, list):
        logger.warning("Ignoring %s: expected a JSON array", path)
        return []
    return data


def _write_json(path: Path, data: Any) -> None:
    # Readers only ever see the old or the new file, never a partial one.
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2, default=str)
        os.replace(tmp, path)
    except BaseException:
        os.unlink(tmp)
        raise


def load(collection: str) -> List[Dict[str, Any]]:
    cached = _read_array(_path(CACHE_DIR, collection))
    if cached:
        return cached
    return _read_array(_path(DATA_DIR, collection))


def save(collection: str, items: List[Dict[str, Any]]) -> None:
    _write_json(_path(CACHE_DIR, collection), items)
    logger.debug("Saved %d %s", len(items), collection)


def get_next_id(items: List[Dict[str, Any]]) -> int:
    return max((int(item["id"]) for item in items), default=0) + 1


def create_document(collection: str, data: Dict[str, Any], model: Optional[Type[BaseModel]] = None) -> Dict[str, Any]:
    """Append a record with the next free id and persist the collection.

    When ``model`` is given the record is validated through it first.
    """
    items = load(collection)
    doc = {**data, "id": get_next_id(items)}
    if model is not None:
        doc = model.model_validate(doc).model_dump(mode="json")
    items.append(doc)
    save(collection, items)
    return doc


def get_documents(collection: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    docs = load(collection)
    if filter_dict:
        docs = [d for d in docs if all(d.get(k) == v for k, v in filter_dict.items())]
    if limit is not None:
        docs = docs[:limit]
    return docs


def find_document(collection: str, doc_id: int) -> Optional[Dict[str, Any]]:
    for doc in load(collection):
        if doc.get("id") == doc_id:
            return doc
    return None


def add_log(user_id: int, action: str) -> Dict[str, Any]:
    return create_document("logs", {"user_id": user_id, "action": action}, model=Log)


def add_notification(user_id: int, message: str) -> Dict[str, Any]:
    return create_document("notifications", {"user_id": user_id, "message": message, "read": False}, model=Notification)


# ---------- Sessions ----------
# Stored apart from the collections, keyed by session id.

def _load_sessions() -> Dict[str, Dict[str, Any]]:
    path = CACHE_DIR / SESSIONS_FILE
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Could not read sessions: %s", e)
        return {}
    return data if isinstance(data, dict) else {}


def _prune_expired(sessions: Dict[str, Dict[str, Any]]) -> int:
    expired = [sid for sid, raw in sessions.items() if Session.model_validate(raw).is_expired()]
    for sid in expired:
        del sessions[sid]
    return len(expired)


def save_session(session: Session) -> None:
    sessions = _load_sessions()
    pruned = _prune_expired(sessions)
    if pruned:
        logger.info("Pruned %d expired sessions", pruned)
    sessions[session.id] = session.model_dump(mode="json")
    _write_json(CACHE_DIR / SESSIONS_FILE, sessions)


def get_session(session_id: str) -> Optional[Session]:
    raw = _load_sessions().get(session_id)
    if raw is None:
        return None
    session = Session.model_validate(raw)
    if session.is_expired():
        return None
    return session


def drop_session(session_id: str) -> bool:
    sessions = _load_sessions()
    if sessions.pop(session_id, None) is None:
        return False
    _write_json(CACHE_DIR / SESSIONS_FILE, sessions)
    return True


def refresh_user_sessions(user: Dict[str, Any]) -> int:
    """Rewrite the cached profile of every open session belonging to ``user``."""
    sessions = _load_sessions()
    profile = PublicProfile.from_user(user).model_dump(mode="json")
    touched = 0
    for raw in sessions.values():
        if raw.get("user", {}).get("id") == user["id"]:
            raw["user"] = profile
            touched += 1
    if touched:
        _write_json(CACHE_DIR / SESSIONS_FILE, sessions)
    return touched


def collection_counts() -> Dict[str, int]:
    return {name: len(load(name)) for name in COLLECTIONS}
