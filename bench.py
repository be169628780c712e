"""Streaming benchmark against a running Tabby server.

Usage:
  uv run python bench.py [--url http://localhost:8080] [--model NAME] [--runs N]
  uv run python bench.py --list-models

Measures per request:
- Time to first text chunk (TTFT)
- Total time and output tokens (server usage, or length/4 estimate)
- Reports median across runs
"""

import argparse
import asyncio
import os
import statistics
import time

from tabby_provider import HandlerOptions, TabbyHandler, get_tabby_models

PROMPTS = [
    "Write a Python function that reverses a linked list.",
    "Explain what a Go channel is in two sentences.",
    "Write a SQL query returning the 5 most recent orders per customer.",
    "Convert this to a list comprehension: for x in xs: if x > 0: out.append(x * 2)",
    "Write a bash one-liner that counts lines in all .py files recursively.",
]


async def bench_stream(handler: TabbyHandler, prompt: str) -> dict:
    """Single streaming request -> {ttft, total, output_tokens}."""
    t0 = time.monotonic()
    ttft = None
    output_tokens = 0
    async for chunk in handler.create_message(
        "You are a concise coding assistant.", [{"role": "user", "content": prompt}]
    ):
        if chunk["type"] == "text" and ttft is None:
            ttft = time.monotonic() - t0
        elif chunk["type"] == "usage":
            output_tokens = chunk["output_tokens"]
    total = time.monotonic() - t0
    return {"ttft": ttft or total, "total": total, "output_tokens": output_tokens}


async def bench(handler: TabbyHandler, n_runs: int):
    ttfts, totals, tps = [], [], []
    for i in range(n_runs):
        prompt = PROMPTS[i % len(PROMPTS)]
        r = await bench_stream(handler, prompt)
        rate = r["output_tokens"] / r["total"] if r["total"] > 0 else 0
        print(
            f"  Run {i + 1}: ttft {r['ttft']:.2f}s | {r['total']:.2f}s | "
            f"{r['output_tokens']} tok | {rate:.0f} tok/s"
        )
        ttfts.append(r["ttft"])
        totals.append(r["total"])
        tps.append(rate)

    print(f"\n  Median TTFT:       {statistics.median(ttfts):.2f}s")
    print(f"  Median latency:    {statistics.median(totals):.2f}s")
    print(f"  Median throughput: {statistics.median(tps):.0f} tok/s")


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--url",
        default=os.environ.get("TABBY_BASE_URL", "http://localhost:8080"),
        help="Tabby server URL (default: $TABBY_BASE_URL or http://localhost:8080)",
    )
    parser.add_argument("--model", default=os.environ.get("TABBY_MODEL"))
    parser.add_argument("--api-key", default=os.environ.get("TABBY_API_KEY"))
    parser.add_argument("--runs", type=int, default=5)
    parser.add_argument(
        "--list-models", action="store_true", help="Print chat models and exit"
    )
    args = parser.parse_args()

    if args.list_models:
        for name in asyncio.run(get_tabby_models(args.url, args.api_key)):
            print(name)
        return

    handler = TabbyHandler(
        HandlerOptions(
            tabby_base_url=args.url,
            tabby_api_key=args.api_key,
            tabby_model_id=args.model,
        )
    )
    model, _ = handler.get_model()
    print(f"{'=' * 60}")
    print(f"Tabby: {args.url} | Model: {model or '(server default)'} | Runs: {args.runs}")
    print(f"{'=' * 60}")
    asyncio.run(bench(handler, args.runs))


if __name__ == "__main__":
    main()
