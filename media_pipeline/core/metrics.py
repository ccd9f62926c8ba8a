from collections import Counter
from threading import Lock
from typing import Counter as CounterType
from typing import Dict

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str, amount: int = 1) -> None:
    with _lock:
        _metrics[key] += amount


def record_upload() -> None:
    _inc("media_uploads")


def record_duplicate_detected() -> None:
    _inc("media_duplicates_detected")


def record_variants_derived(count: int) -> None:
    if count > 0:
        _inc("media_variants_derived", count)


def record_variant_failures(count: int) -> None:
    if count > 0:
        _inc("media_variant_failures", count)


def record_delete() -> None:
    _inc("media_deleted")


def record_usage_blocked() -> None:
    _inc("media_usage_blocked")


def record_bulk_run(operation: str) -> None:
    _inc(f"media_bulk_{operation}")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
