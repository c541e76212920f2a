"""Internal store exposed as a source.

Answers from the SQLite store of previously seen companies.  Queries run
in a worker thread so the event loop never blocks on disk I/O.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional

from registry_hub.core.data_models import CompanyRecord, SourceQuery
from registry_hub.sources.base import BaseSourceClient, ParseOutcome, SourceConfig
from registry_hub.storage.database import Database


class LocalStoreSource(BaseSourceClient):
    """Source backed by the local company store."""

    def __init__(self, database: Database, config: Optional[SourceConfig] = None) -> None:
        super().__init__(config or SourceConfig(name="local", timeout=2.0))
        self.database = database

    def _lookup(self, query: SourceQuery) -> List[CompanyRecord]:
        if query.is_identifier:
            record = self.database.get_company(query.registry_id)
            return [record] if record else []
        return self.database.search_companies(query.text or "", limit=query.limit)

    async def _fetch(self, query: SourceQuery) -> ParseOutcome:
        outcome = ParseOutcome()
        for record in await asyncio.to_thread(self._lookup, query):
            record.source_breakdown = {self.name: record.present_fields()}
            outcome.add(record)
        return outcome

    async def close(self) -> None:
        return None
