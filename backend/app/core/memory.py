import math
import uuid
from datetime import datetime

from loguru import logger

from app.config import get_settings
from app.db.store import KeyValueStore, get_store
from app.models.chat import MemoryEntry, Message, RecalledEntry, now_ms

EMBED_DIM = 64

FNV_OFFSET = 0x811C9DC5
FNV_PRIME = 0x01000193


def _memory_key(conversation_id: str) -> str:
    return f"memory:{conversation_id}"


def hash_token(token: str) -> int:
    """32-bit FNV-1a."""
    h = FNV_OFFSET
    for ch in token:
        h ^= ord(ch)
        h = (h * FNV_PRIME) & 0xFFFFFFFF
    return h


def embed(text: str | None) -> list[float]:
    vec = [0.0] * EMBED_DIM
    for token in (text or "").lower().split():
        vec[hash_token(token) % EMBED_DIM] += 1.0

    norm = math.sqrt(sum(v * v for v in vec)) or 1.0
    return [v / norm for v in vec]


def cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    denom = (norm_a * norm_b) or 1.0
    # Clamp float noise so cosine(v, v) never reports 1.0000000002
    return max(-1.0, min(1.0, dot / denom))


async def load_entries(conversation_id: str, store: KeyValueStore | None = None) -> list[MemoryEntry]:
    store = store or get_store()
    raw = await store.get(_memory_key(conversation_id)) or []
    return [MemoryEntry(**item) for item in raw]


async def record(
    conversation_id: str,
    message: Message,
    store: KeyValueStore | None = None,
    capacity: int | None = None,
) -> MemoryEntry | None:
    """Append an entry for message; keeps only the newest `capacity` entries."""
    if not conversation_id or not message or not message.content:
        return None

    capacity = capacity or get_settings().memory_capacity
    store = store or get_store()
    try:
        entries = await load_entries(conversation_id, store)
        timestamp = now_ms()
        entry = MemoryEntry(
            id=f"{message.role}_{uuid.uuid4().hex[:16]}",
            text=message.content,
            embedding=embed(message.content),
            timestamp=timestamp,
        )
        entries.append(entry)
        entries = entries[-capacity:]
        await store.set(
            _memory_key(conversation_id),
            [e.model_dump() for e in entries],
        )
        return entry
    except Exception as e:
        logger.warning("[memory] failed to record entry for {}: {}", conversation_id, e)
        return None


async def search(
    conversation_id: str,
    query: str | None,
    top_k: int | None = None,
    store: KeyValueStore | None = None,
) -> list[RecalledEntry]:
    """Return up to top_k entries most similar to query, best first, score > 0 only."""
    if not query or not conversation_id:
        return []

    top_k = top_k if top_k is not None else get_settings().memory_top_k
    try:
        entries = await load_entries(conversation_id, store)
        if not entries:
            return []

        query_vec = embed(query)
        scored = [
            RecalledEntry(**entry.model_dump(), score=cosine(query_vec, entry.embedding))
            for entry in entries
        ]
        # sorted() is stable, so equal scores keep insertion order
        ranked = sorted(scored, key=lambda e: e.score, reverse=True)
        results = [e for e in ranked if e.score > 0][:top_k]

        logger.debug("[memory] recalled {} of {} entries for {!r}", len(results), len(entries), query[:60])
        return results
    except Exception as e:
        logger.warning("[memory] search failed, continuing without recall: {}", e)
        return []


async def forget(conversation_id: str, store: KeyValueStore | None = None) -> None:
    store = store or get_store()
    try:
        await store.delete(_memory_key(conversation_id))
    except Exception as e:
        logger.warning("[memory] failed to drop entries for {}: {}", conversation_id, e)


def format_recall(entries: list[MemoryEntry]) -> str:
    if not entries:
        return ""
    lines = "\n".join(
        f"- ({datetime.fromtimestamp(e.timestamp / 1000).strftime('%Y-%m-%d %H:%M')}) {e.text}"
        for e in entries
    )
    return f"Relevant past details:\n{lines}"
