import json
from pathlib import Path
from typing import List, Optional, Tuple

import aiosqlite

from .schemas import ModelDescriptor


CACHE_KEY = "registry"


class RegistryCacheStore:
    """On-disk layer of the registry cache: one row holding the last fetched model list."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    async def init(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(
                """
                CREATE TABLE IF NOT EXISTS registry_cache(
                    cache_key TEXT PRIMARY KEY,
                    models_json TEXT NOT NULL,
                    fetched_at REAL NOT NULL
                );
                """
            )
            await db.commit()

    async def save(self, models: List[ModelDescriptor], fetched_at: float) -> None:
        payload = json.dumps([m.to_wire() for m in models], ensure_ascii=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO registry_cache(cache_key, models_json, fetched_at) VALUES (?,?,?)",
                (CACHE_KEY, payload, fetched_at),
            )
            await db.commit()

    async def load(self) -> Optional[Tuple[List[ModelDescriptor], float]]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT models_json, fetched_at FROM registry_cache WHERE cache_key=?",
                (CACHE_KEY,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        if not row:
            return None
        try:
            raw = json.loads(row["models_json"] or "[]")
        except ValueError:
            return None
        models = [ModelDescriptor.model_validate(item) for item in raw if isinstance(item, dict)]
        return models, float(row["fetched_at"])

    async def clear(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM registry_cache")
            await db.commit()
