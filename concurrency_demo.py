"""Concurrency demo that fires several matching sweeps at the ASGI app at once.
Runs in-process against seeded data and shows that no opt-in ends up in two rides.
Run: python concurrency_demo.py
"""
import asyncio

import httpx

from config import get_settings
from main import app
from sample_data import seed
import store


async def run():
    seeded = seed()
    day = seeded["date"].isoformat()
    headers = {"X-Service-Key": get_settings().service_api_key}
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        tasks = [client.post("/match/trigger", json={"date": day}, headers=headers) for _ in range(10)]
        res = await asyncio.gather(*tasks)
        for r in res:
            body = r.json()
            print(r.status_code, body.get("matched"), body.get("failed"), len(body.get("rides", [])))
    pending = store.pending_for_date(seeded["date"])
    print(f"{len(seeded['opt_in_ids']) - len(pending)} opt-ins matched, {len(pending)} still pending")


if __name__ == "__main__":
    asyncio.run(run())
