#!/usr/bin/env python3
"""
Performance Benchmark for the delegation engine

Measures the paths a host calls most:

- Creation: >200 delegations/sec (one unit of work each, SQLite)
- Authorization check: <5ms per has_active_delegation call
- Listing: <100ms for a filtered page over 2K delegations
- Sweep: <5sec to expire 1K overdue delegations

Run:
    python scripts/performance_benchmark.py
"""

import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path

from tenant_delegation import DelegationEngine
from tenant_delegation.delegation.models import DelegationStatus
from tenant_delegation.kernel.ids import SequentialIdFactory
from tenant_delegation.kernel.time import TestTimeProvider

START = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
TENANT = "bench"


def build_engine(tmpdir: str, time_provider: TestTimeProvider, members: int = 50) -> DelegationEngine:
    engine = DelegationEngine(
        Path(tmpdir) / "bench.db",
        time_provider=time_provider,
        id_factory=SequentialIdFactory("bench"),
    )
    for i in range(members):
        engine.add_user(TENANT, f"user_{i}", f"user_{i}@bench.test")
    for i in range(10):
        engine.add_permission(f"perm_{i}", f"Permission {i}")
    return engine


def benchmark_create_rate() -> dict:
    """Benchmark delegation creation throughput"""
    print("\n=== Benchmark: Creation Rate ===")

    count = 500
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = build_engine(tmpdir, TestTimeProvider(START))

        start_time = time.time()
        for i in range(count):
            engine.create_delegation(
                TENANT,
                f"user_{i % 50}",
                f"user_{(i + 1) % 50}",
                f"Benchmark grant {i}",
                permission_ids=[f"perm_{i % 10}"],
                ttl_hours=24,
            )
        elapsed = time.time() - start_time

    per_sec = count / elapsed if elapsed > 0 else 0
    print(f"  Delegations created: {count}")
    print(f"  Time elapsed: {elapsed:.2f}s")
    print(f"  Delegations/sec: {per_sec:.1f}")
    print(f"  Target: >200/sec")
    print(f"  Status: {'✓ PASS' if per_sec > 200 else '✗ FAIL'}")

    return {
        "test": "create_rate",
        "delegations": count,
        "elapsed_sec": elapsed,
        "per_sec": per_sec,
        "pass": per_sec > 200,
    }


def benchmark_check_latency() -> dict:
    """Benchmark the authorization read path"""
    print("\n=== Benchmark: has_active_delegation Latency ===")

    checks = 1000
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = build_engine(tmpdir, TestTimeProvider(START))

        print("  Creating and activating 200 grants...")
        for i in range(200):
            view = engine.create_delegation(
                TENANT,
                f"user_{i % 50}",
                f"user_{(i + 7) % 50}",
                f"Active grant {i}",
                permission_ids=[f"perm_{i % 10}"],
                ttl_hours=72,
            )
            engine.activate(view.delegation_id, view.delegate_id, TENANT)

        start_time = time.time()
        granted = 0
        for i in range(checks):
            if engine.has_active_delegation(f"user_{i % 50}", TENANT, [f"perm_{i % 10}"]):
                granted += 1
        elapsed_ms = (time.time() - start_time) * 1000

    per_check_ms = elapsed_ms / checks
    print(f"  Checks: {checks} ({granted} granted)")
    print(f"  Average latency: {per_check_ms:.2f}ms")
    print(f"  Target: <5ms")
    print(f"  Status: {'✓ PASS' if per_check_ms < 5 else '✗ FAIL'}")

    return {
        "test": "check_latency",
        "checks": checks,
        "avg_ms": per_check_ms,
        "pass": per_check_ms < 5,
    }


def benchmark_query_performance() -> dict:
    """Benchmark a filtered, searched listing page"""
    print("\n=== Benchmark: Listing Query ===")

    with tempfile.TemporaryDirectory() as tmpdir:
        engine = build_engine(tmpdir, TestTimeProvider(START))

        print("  Creating test data...")
        for i in range(2000):
            engine.create_delegation(
                TENANT,
                f"user_{i % 50}",
                f"user_{(i + 3) % 50}",
                f"{'Quarter close' if i % 4 == 0 else 'Leave cover'} {i}",
                permission_ids=[f"perm_{i % 10}"],
                ttl_hours=24 + i % 100,
                requires_approval=i % 2 == 0,
            )

        start_time = time.time()
        page = engine.list_delegations(
            TENANT, status=DelegationStatus.PENDING, search="quarter", page=3, limit=50
        )
        elapsed_ms = (time.time() - start_time) * 1000

        stats_start = time.time()
        stats = engine.stats(TENANT)
        stats_ms = (time.time() - stats_start) * 1000

    print(f"  Matching rows: {page.total} ({page.total_pages} pages)")
    print(f"  Query time: {elapsed_ms:.1f}ms")
    print(f"  Stats time: {stats_ms:.1f}ms over {stats.total_delegations} delegations")
    print(f"  Target: <100ms")
    print(f"  Status: {'✓ PASS' if elapsed_ms < 100 else '✗ FAIL'}")

    return {
        "test": "listing_query",
        "elapsed_ms": elapsed_ms,
        "stats_ms": stats_ms,
        "target_ms": 100,
        "pass": elapsed_ms < 100,
    }


def benchmark_sweep() -> dict:
    """Benchmark expiring a large overdue backlog"""
    print("\n=== Benchmark: Expiration Sweep ===")

    count = 1000
    time_provider = TestTimeProvider(START)
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = build_engine(tmpdir, time_provider)

        print(f"  Creating {count} short-lived grants...")
        for i in range(count):
            engine.create_delegation(
                TENANT,
                f"user_{i % 50}",
                f"user_{(i + 1) % 50}",
                f"Short grant {i}",
                ttl_hours=1,
            )

        time_provider.advance_hours(2)
        start_time = time.time()
        expired = engine.sweep().expired_count
        elapsed = time.time() - start_time

    print(f"  Expired: {expired}")
    print(f"  Time: {elapsed:.2f}s")
    print(f"  Target: <5s")
    print(f"  Status: {'✓ PASS' if elapsed < 5 else '✗ FAIL'}")

    return {
        "test": "sweep",
        "expired": expired,
        "elapsed_sec": elapsed,
        "pass": elapsed < 5 and expired == count,
    }


def main() -> None:
    """Run all benchmarks"""
    print("\n" + "="*70)
    print("  Tenant Delegation - Performance Benchmark Suite")
    print("="*70)

    results = []

    results.append(benchmark_create_rate())
    results.append(benchmark_check_latency())
    results.append(benchmark_query_performance())
    results.append(benchmark_sweep())

    # Summary
    print("\n" + "="*70)
    print("  Summary")
    print("="*70)

    passed = sum(1 for r in results if r.get("pass", True))
    total = len([r for r in results if "pass" in r])

    for result in results:
        test_name = result["test"]
        status = "✓ PASS" if result.get("pass", True) else "✗ FAIL"
        print(f"  {test_name:30s} {status}")

    print(f"\n  Tests passed: {passed}/{total}")

    if passed == total:
        print("\n  ✓✓✓ All performance targets met!")
    else:
        print("\n  ⚠️ Some performance targets not met (see details above)")

    print("\n" + "="*70 + "\n")


if __name__ == "__main__":
    main()
