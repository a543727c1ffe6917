import json
import os
import logging
from pymongo import ASCENDING
from dotenv import load_dotenv
from .db import get_db
from .models import SourceConfig

load_dotenv()

SOURCES_SEED_PATH = os.getenv(
    "SOURCES_SEED_PATH",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "sources_seed.json"),
)

logger = logging.getLogger("ingestion.registry")
logger.setLevel(logging.INFO)


def load_seed_sources(path=SOURCES_SEED_PATH):
    """
    Read source definitions from the JSON seed file.

    The file holds ``{"sources": [...]}``; each entry is validated into a
    SourceConfig. Entries whose ``notes`` contain "EXCLUDE" are skipped.

    Args:
        path (str): Location of the seed file

    Returns:
        list[SourceConfig]: Sources in file order.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    sources = []
    for entry in data.get("sources", []):
        if "EXCLUDE" in (entry.get("notes") or ""):
            continue
        sources.append(SourceConfig.model_validate(entry))
    return sources


async def upsert_source(source):
    db = get_db()
    await db.sources.update_one(
        {"id": source.id}, {"$set": source.model_dump()}, upsert=True
    )


async def seed_sources(path=SOURCES_SEED_PATH):
    """Upsert every seed source into the sources collection; returns the count."""
    sources = load_seed_sources(path)
    for source in sources:
        await upsert_source(source)
    logger.info(f"Seeded {len(sources)} sources from {path}")
    return len(sources)


async def get_source(source_id):
    """Return the SourceConfig for ``source_id`` or None."""
    db = get_db()
    doc = await db.sources.find_one({"id": source_id})
    return SourceConfig.model_validate(doc) if doc else None


async def list_sources(enabled_only=False):
    """Return sources ordered by ascending priority."""
    db = get_db()
    q = {"enabled": True} if enabled_only else {}
    docs = await db.sources.find(q).sort([("priority", ASCENDING)]).to_list(length=None)
    return [SourceConfig.model_validate(d) for d in docs]


async def get_enabled_sources():
    return await list_sources(enabled_only=True)
