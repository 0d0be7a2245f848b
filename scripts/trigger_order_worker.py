"""Ask a running order worker to drain the queue and print its results."""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for manual or scheduled queue drains."""

    parser = argparse.ArgumentParser(description="Trigger POST /order-worker.")
    parser.add_argument("--worker-url", default="http://localhost:8003")
    parser.add_argument("--max-jobs", type=int, default=10)
    parser.add_argument("--job-type", default=None)
    args = parser.parse_args()

    params = {"max_jobs": args.max_jobs}
    if args.job_type:
        params["job_type"] = args.job_type
    resp = httpx.post(
        f"{args.worker_url}/order-worker",
        params=params,
        headers={"Authorization": f"Bearer {os.environ['SERVICE_API_KEY']}"},
        timeout=60.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
