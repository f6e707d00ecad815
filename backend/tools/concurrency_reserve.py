"""
Fire concurrent reserve requests at a running server and print the resulting
stock counters, to eyeball the invariant available + reserved == total.

    python tools/concurrency_reserve.py --product 1 --qty 2 --workers 16
"""
import argparse
import concurrent.futures
import json
import os

import requests

BASE = os.environ.get("ORDERFLOW_BASE", "http://127.0.0.1:8000")


def reserve_task(i, order_id, product_id, qty, ttl):
    payload = {
        "order_id": order_id,
        "items": [{"product_id": product_id, "quantity": qty}],
        "ttl_seconds": ttl,
    }
    try:
        r = requests.post(f"{BASE}/api/inventory/reserve", json=payload, timeout=10)
        return (i, order_id, r.status_code, r.text)
    except requests.RequestException as e:
        return (i, order_id, "ERR", str(e))


def run_reserve_concurrent(workers, product_id, qty, ttl, first_order_id, same_order):
    print(f"Running reserve test: workers={workers}, product={product_id}, qty={qty}, ttl={ttl}")
    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as ex:
        futures = [
            ex.submit(
                reserve_task,
                i,
                first_order_id if same_order else first_order_id + i,
                product_id,
                qty,
                ttl,
            )
            for i in range(workers)
        ]
        results = [f.result() for f in futures]

    by_status = {}
    for _, _, code, _ in results:
        by_status[code] = by_status.get(code, 0) + 1
    print("Responses by status:", by_status)

    idempotent = sum(
        1 for r in results if r[2] == 200 and json.loads(r[3]).get("idempotent")
    )
    print("Idempotent replays:", idempotent)

    levels = requests.get(f"{BASE}/api/inventory/products/{product_id}", timeout=10).json()
    print("Stock levels:", levels)
    ok = levels["stock_available"] + levels["stock_reserved"] == levels["stock_total"]
    print("Invariant holds:", ok)
    return ok


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Concurrent reserve load tool.")
    parser.add_argument("--product", type=int, default=1)
    parser.add_argument("--qty", type=int, default=1)
    parser.add_argument("--ttl", type=int, default=60)
    parser.add_argument("--workers", type=int, default=8)
    parser.add_argument("--first-order", type=int, default=100000)
    parser.add_argument(
        "--same-order", action="store_true", help="all workers reserve for one order (idempotence)"
    )
    args = parser.parse_args()
    run_reserve_concurrent(
        args.workers, args.product, args.qty, args.ttl, args.first_order, args.same_order
    )
