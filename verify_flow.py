import asyncio
import json
import sys

import httpx

BASE = "http://localhost:8000"

SAMPLE = {
    "nodes": [{"id": "A"}, {"id": "B"}, {"id": "C"}, {"id": "D"}],
    "links": [
        {"source": "A", "target": "B", "amount": 5},
        {"source": "A", "target": "B", "amount": 3},
        {"source": "B", "target": "C", "amount": 2},
        {"source": "X", "target": "D", "amount": 1},
    ],
    "startNode": "A",
}


async def check():
    async with httpx.AsyncClient(timeout=30.0) as client:
        print("Checking health...")
        resp = await client.get(f"{BASE}/api/health")
        print(f"Health Status: {resp.status_code} {resp.json()}")
        if resp.status_code != 200:
            return False

        ok = True
        for layout in ("tree", "force", "sankey"):
            print(f"Posting sample graph with layout={layout}...")
            resp = await client.post(f"{BASE}/api/graph", json={**SAMPLE, "layout": layout})
            if resp.status_code != 200:
                print(f"Error: {resp.text}")
                ok = False
                continue
            data = resp.json()
            depths = {n["id"]: n["depth"] for n in data["graph"]["nodes"]}
            placed = sorted(data["layout"]["positions"])
            print(f"  depths={json.dumps(depths)} placed={placed} edges={len(data['layout']['edges'])}")
            if placed != ["A", "B", "C", "D"]:
                print("  ❌ Some nodes were not placed")
                ok = False

        resp = await client.get(f"{BASE}/api/history")
        print(f"Recent runs: {len(resp.json().get('entries', []))}")
        return ok


if __name__ == "__main__":
    sys.exit(0 if asyncio.run(check()) else 1)
