"""Fetch and print send-log stats or stuck pending rows as JSON."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for send-log checks."""

    parser = argparse.ArgumentParser(description="Query dispatcher send-log ops endpoints.")
    parser.add_argument("report", choices=["stats", "pending"])
    parser.add_argument("--dispatcher-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--hours", type=int, default=24, help="stats window")
    parser.add_argument("--older-than-seconds", type=int, default=300, help="pending age threshold")
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    if args.report == "stats":
        params = {"hours": args.hours}
    else:
        params = {"older_than_seconds": args.older_than_seconds, "limit": args.limit}

    resp = httpx.get(
        f"{args.dispatcher_url}/ops/send-log/{args.report}",
        params=params,
        headers={"x-api-key": args.api_key},
        timeout=10.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
