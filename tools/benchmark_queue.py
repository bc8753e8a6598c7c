"""
Queue Benchmark Tool for docqueue

Measures add / get+ack throughput and latency of a Queue on the built-in
CASRecordStore, over InMemoryStorage and LocalFileSystemStorage, with and
without group commit.

Usage:
    pip install -e ".[tools]"
    python tools/benchmark_queue.py
    python tools/benchmark_queue.py --operations 2000 --concurrency 10,50
    python tools/benchmark_queue.py --adapters memory --no-group-commit
"""

from __future__ import annotations

import asyncio
import statistics
import sys
import tempfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from time import perf_counter

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from docqueue import CASRecordStore, InMemoryStorage, LocalFileSystemStorage, Queue, connect
from docqueue.ports.storage import ObjectStoragePort

app = typer.Typer(
    help="Benchmark docqueue queue operations",
    add_completion=False,
)


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class BenchmarkConfig:
    operations: int = 1000
    concurrency_levels: list[int] = field(default_factory=lambda: [10, 50])
    payload_size: int = 1000
    adapters: list[str] = field(default_factory=lambda: ["memory", "filesystem"])
    group_commit: bool = True


@dataclass
class BenchmarkResult:
    """Latencies of one scenario on one adapter."""

    adapter_name: str
    operation: str
    total_time: float
    latencies: list[float]  # seconds
    storage_writes: int | None = None

    @property
    def total_ops(self) -> int:
        return len(self.latencies)

    @property
    def ops_per_sec(self) -> float:
        return self.total_ops / self.total_time if self.total_time > 0 else 0.0

    def percentile(self, q: float) -> float:
        if not self.latencies:
            return 0.0
        ordered = sorted(self.latencies)
        return ordered[min(int(len(ordered) * q), len(ordered) - 1)]

    @property
    def p50(self) -> float:
        return statistics.median(self.latencies) if self.latencies else 0.0

    @property
    def max_latency(self) -> float:
        return max(self.latencies, default=0.0)


def format_latency_ms(seconds: float) -> str:
    ms = seconds * 1000
    if ms < 1:
        return f"{ms:.3f}ms"
    if ms < 10:
        return f"{ms:.2f}ms"
    return f"{ms:.1f}ms"


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


async def _timed(fn: Callable[[], Awaitable[bool]]) -> float | None:
    """Latency of one call, or None if it did no work (empty poll)."""
    start = perf_counter()
    did_work = await fn()
    return perf_counter() - start if did_work else None


async def run_batches(
    fn: Callable[[], Awaitable[bool]], n: int, concurrency: int
) -> list[float]:
    """Run fn until n calls did work, `concurrency` at a time."""
    latencies: list[float] = []
    while len(latencies) < n:
        batch = min(concurrency, n - len(latencies))
        results = await asyncio.gather(*(_timed(fn) for _ in range(batch)))
        done = [lat for lat in results if lat is not None]
        if not done:
            break
        latencies.extend(done)
    return latencies


def adder(queue: Queue, payload: str) -> Callable[[], Awaitable[bool]]:
    async def add_one() -> bool:
        await queue.add({"body": payload})
        return True

    return add_one


def consumer(queue: Queue) -> Callable[[], Awaitable[bool]]:
    async def get_and_ack() -> bool:
        job = await queue.get()
        if job is None:
            return False
        await queue.ack(job.ack)
        return True

    return get_and_ack


def mixed(queue: Queue, payload: str) -> Callable[[], Awaitable[bool]]:
    produce = adder(queue, payload)
    consume = consumer(queue)
    turn = 0

    async def step() -> bool:
        nonlocal turn
        turn += 1
        if turn % 2:
            return await produce()
        return await consume()

    return step


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def create_storage(adapter_name: str, temp_dir: Path, run: int) -> ObjectStoragePort:
    if adapter_name == "memory":
        return InMemoryStorage()
    if adapter_name == "filesystem":
        return LocalFileSystemStorage(temp_dir / f"db-{run}.json")
    raise typer.BadParameter(f"unknown adapter: {adapter_name}")


async def run_adapter_benchmark(
    adapter_name: str, config: BenchmarkConfig, temp_dir: Path
) -> list[BenchmarkResult]:
    payload = "x" * config.payload_size
    scenarios: list[tuple[str, int]] = [("add", 1), ("get+ack", 1)]
    for c in config.concurrency_levels:
        scenarios += [("add", c), ("get+ack", c), ("mixed", c)]

    results: list[BenchmarkResult] = []
    for run, (name, concurrency) in enumerate(scenarios):
        storage = create_storage(adapter_name, temp_dir, run)
        async with CASRecordStore(
            storage, max_retries=100, group_commit=config.group_commit
        ) as store:
            queue = await connect(store, "bench")
            if name == "add":
                fn = adder(queue, payload)
            else:
                await queue.add_bulk([{"body": payload}] * config.operations)
                fn = consumer(queue) if name == "get+ack" else mixed(queue, payload)

            writes_before = getattr(storage, "writes", None)
            start = perf_counter()
            latencies = await run_batches(fn, config.operations, concurrency)
            total_time = perf_counter() - start

        writes = getattr(storage, "writes", None)
        results.append(
            BenchmarkResult(
                adapter_name=adapter_name,
                operation=f"{name}-c{concurrency}",
                total_time=total_time,
                latencies=latencies,
                storage_writes=(
                    writes - writes_before
                    if writes is not None and writes_before is not None
                    else None
                ),
            )
        )
    return results


# ---------------------------------------------------------------------------
# Result Formatting
# ---------------------------------------------------------------------------


def print_results(results: list[BenchmarkResult], group_commit: bool) -> None:
    console = Console()
    mode = "group commit" if group_commit else "direct CAS"
    console.print()
    console.print(
        Panel(f"[bold cyan]docqueue benchmark ({mode})[/bold cyan]", expand=False)
    )

    by_adapter: dict[str, list[BenchmarkResult]] = {}
    for result in results:
        by_adapter.setdefault(result.adapter_name, []).append(result)

    for adapter_name, adapter_results in by_adapter.items():
        console.print()
        console.print(f"[bold yellow]Storage: {adapter_name}[/bold yellow]")

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Scenario", style="cyan", width=15)
        table.add_column("Ops", justify="right")
        table.add_column("Ops/sec", justify="right", style="green")
        table.add_column("P50", justify="right")
        table.add_column("P95", justify="right")
        table.add_column("P99", justify="right")
        table.add_column("Max", justify="right")
        table.add_column("Writes", justify="right")

        for r in adapter_results:
            table.add_row(
                r.operation,
                str(r.total_ops),
                f"{r.ops_per_sec:.1f}",
                format_latency_ms(r.p50),
                format_latency_ms(r.percentile(0.95)),
                format_latency_ms(r.percentile(0.99)),
                format_latency_ms(r.max_latency),
                "-" if r.storage_writes is None else str(r.storage_writes),
            )
        console.print(table)
    console.print()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@app.command()
def main(
    operations: int = typer.Option(
        1000, "--operations", "-n", help="Operations per scenario"
    ),
    concurrency: str = typer.Option(
        "10,50", "--concurrency", "-c", help="Comma-separated concurrency levels"
    ),
    adapters: str = typer.Option(
        "memory,filesystem", "--adapters", "-a", help="Comma-separated storages to test"
    ),
    group_commit: bool = typer.Option(
        True, "--group-commit/--no-group-commit", help="Batch concurrent writes"
    ),
) -> None:
    """
    Benchmark docqueue queue operations.

    Reports throughput, latency percentiles and, for in-memory storage, the
    number of storage writes each scenario cost.
    """
    config = BenchmarkConfig(
        operations=operations,
        concurrency_levels=[int(c) for c in concurrency.split(",") if c.strip()],
        adapters=[a.strip() for a in adapters.split(",") if a.strip()],
        group_commit=group_commit,
    )

    all_results: list[BenchmarkResult] = []
    with tempfile.TemporaryDirectory() as temp_dir_str:
        for adapter_name in config.adapters:
            try:
                all_results += asyncio.run(
                    run_adapter_benchmark(adapter_name, config, Path(temp_dir_str))
                )
            except Exception as e:
                print(f"\nError benchmarking {adapter_name}: {e}", file=sys.stderr)

    if not all_results:
        print("\nNo benchmark results to display.", file=sys.stderr)
        raise typer.Exit(code=1)
    print_results(all_results, config.group_commit)


if __name__ == "__main__":
    app()
