"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
import time
from typing import Dict, Tuple


_lock = Lock()
_started_at = time.time()

_http_requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
_http_request_duration_sum: Dict[Tuple[str, str], float] = defaultdict(float)
_http_request_duration_count: Dict[Tuple[str, str], int] = defaultdict(int)
_approval_transitions_total: Dict[Tuple[str, str], int] = defaultdict(int)
_notifications_total: Dict[Tuple[str, str], int] = defaultdict(int)
_distribution_jobs_total: Dict[Tuple[str, str], int] = defaultdict(int)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _normalize_label(value: str, *, fallback: str = "unknown") -> str:
    normalized = (value or "").strip()
    return normalized or fallback


def record_http_request(*, method: str, path: str, status_code: int, duration_seconds: float) -> None:
    status = str(status_code)
    method_label = method.upper()
    path_label = path or "unknown"
    duration = max(duration_seconds, 0.0)

    with _lock:
        _http_requests_total[(method_label, path_label, status)] += 1
        _http_request_duration_sum[(method_label, path_label)] += duration
        _http_request_duration_count[(method_label, path_label)] += 1


def record_approval_transition(*, intent: str, to_state: str) -> None:
    with _lock:
        _approval_transitions_total[(_normalize_label(intent), _normalize_label(to_state))] += 1


def record_notification(*, channel: str, status: str) -> None:
    with _lock:
        _notifications_total[(_normalize_label(channel), _normalize_label(status))] += 1


def record_distribution_job(*, mode: str, status: str) -> None:
    with _lock:
        _distribution_jobs_total[(_normalize_label(mode), _normalize_label(status))] += 1


def _render_counter(
    lines: list[str],
    *,
    name: str,
    help_text: str,
    label_names: Tuple[str, ...],
    values: Dict[Tuple[str, ...], int],
) -> None:
    lines.append(f"# HELP {name} {help_text}")
    lines.append(f"# TYPE {name} counter")
    for labels, value in sorted(values.items()):
        rendered = ",".join(
            f'{label_name}="{_escape_label(label_value)}"' for label_name, label_value in zip(label_names, labels)
        )
        lines.append(f"{name}{{{rendered}}} {value}")


def render_prometheus_metrics(*, app_name: str, app_version: str, env: str) -> str:
    uptime = max(time.time() - _started_at, 0.0)

    with _lock:
        http_total = dict(_http_requests_total)
        duration_sum = dict(_http_request_duration_sum)
        duration_count = dict(_http_request_duration_count)
        transitions_total = dict(_approval_transitions_total)
        notifications_total = dict(_notifications_total)
        jobs_total = dict(_distribution_jobs_total)

    lines = [
        "# HELP contentos_build_info Build metadata.",
        "# TYPE contentos_build_info gauge",
        (
            f'contentos_build_info{{app_name="{_escape_label(app_name)}",'
            f'version="{_escape_label(app_version)}",env="{_escape_label(env)}"}} 1'
        ),
        "# HELP contentos_process_uptime_seconds Process uptime in seconds.",
        "# TYPE contentos_process_uptime_seconds gauge",
        f"contentos_process_uptime_seconds {uptime:.6f}",
    ]

    _render_counter(
        lines,
        name="contentos_http_requests_total",
        help_text="Total HTTP requests.",
        label_names=("method", "path", "status"),
        values=http_total,
    )

    lines.extend(
        [
            "# HELP contentos_http_request_duration_seconds Request duration summary.",
            "# TYPE contentos_http_request_duration_seconds summary",
        ]
    )
    for (method, path), value in sorted(duration_sum.items()):
        lines.append(
            (
                f'contentos_http_request_duration_seconds_sum{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value:.6f}'
            )
        )
    for (method, path), value in sorted(duration_count.items()):
        lines.append(
            (
                f'contentos_http_request_duration_seconds_count{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value}'
            )
        )

    _render_counter(
        lines,
        name="contentos_approval_transitions_total",
        help_text="Approval workflow transitions by intent and resulting state.",
        label_names=("intent", "to_state"),
        values=transitions_total,
    )
    _render_counter(
        lines,
        name="contentos_workflow_notifications_total",
        help_text="Workflow notification delivery outcomes.",
        label_names=("channel", "status"),
        values=notifications_total,
    )
    _render_counter(
        lines,
        name="contentos_distribution_jobs_total",
        help_text="Distribution jobs written by mode and status.",
        label_names=("mode", "status"),
        values=jobs_total,
    )

    lines.append("")
    return "\n".join(lines)


def reset_metrics_for_tests() -> None:
    global _started_at
    with _lock:
        _http_requests_total.clear()
        _http_request_duration_sum.clear()
        _http_request_duration_count.clear()
        _approval_transitions_total.clear()
        _notifications_total.clear()
        _distribution_jobs_total.clear()
    _started_at = time.time()
