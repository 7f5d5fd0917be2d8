"""Recompute adherence rollups from completion records.

Usage: python scripts/rebuild_adherence.py <medication_id> [start YYYY-MM-DD] [end YYYY-MM-DD]
"""
import asyncio
import sys
import uuid
from datetime import date

from medtrack.core.clock import system_clock
from medtrack.db.database import AsyncSessionLocal
from medtrack.medications import crud
from medtrack.medications.adherence import AdherenceAggregator


async def rebuild(medication_id: uuid.UUID, start: date = None, end: date = None):
    async with AsyncSessionLocal() as db:
        med = await crud.get_medication(db, medication_id)
        start = start or med.start_date
        end = end or system_clock.today()
        written = await AdherenceAggregator(db).rebuild(medication_id, start, end)
        print(f"Rebuilt {written} day(s) for {med.name} between {start} and {end}")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        sys.exit(__doc__)
    args = sys.argv[2:]
    asyncio.run(
        rebuild(
            uuid.UUID(sys.argv[1]),
            date.fromisoformat(args[0]) if len(args) > 0 else None,
            date.fromisoformat(args[1]) if len(args) > 1 else None,
        )
    )
