# scripts/run_sweep_once.py
import asyncio
from account_guard.db.session import get_db
from account_guard.services.maintenance import run_sweep

async def main():
    agen = get_db()
    db = await agen.__anext__()
    try:
        result = await run_sweep(db)
        print(result.as_dict())
    finally:
        await agen.aclose()

if __name__ == "__main__":
    asyncio.run(main())
