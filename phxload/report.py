from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable

import pandas as pd

from .metrics import MetricSink
from .scheduler import RunStatistics

LOGGER = logging.getLogger("phxload.report")

TREND_STATS = ("avg", "min", "med", "max", "p(90)", "p(95)")
LABEL_WIDTH = 32


def summarize_trend(values: Iterable[float]) -> dict[str, float]:
    series = pd.Series(list(values), dtype="float64")
    if series.empty:
        return {"count": 0, **{stat: 0.0 for stat in TREND_STATS}}
    return {
        "count": int(series.size),
        "avg": float(series.mean()),
        "min": float(series.min()),
        "med": float(series.median()),
        "max": float(series.max()),
        "p(90)": float(series.quantile(0.90)),
        "p(95)": float(series.quantile(0.95)),
    }


def build_summary(sink: MetricSink, stats: RunStatistics | None = None) -> dict[str, Any]:
    duration_s = stats.duration_s if stats else 0.0

    checks = {
        name: {"passes": tally.passes, "fails": tally.fails, "rate": tally.pass_rate}
        for name, tally in sorted(sink.checks().items())
    }
    trends = {name: summarize_trend(values) for name, values in sorted(sink.trends().items())}
    counters = {
        name: {"count": count, "rate": count / duration_s if duration_s > 0 else 0.0}
        for name, count in sorted(sink.counters().items())
    }

    summary: dict[str, Any] = {"checks": checks, "trends": trends, "counters": counters}
    if stats is not None:
        summary["run"] = {
            "vus": stats.vus,
            "iterations": stats.iterations,
            "duration_s": duration_s,
            "stragglers": stats.stragglers,
        }
    return summary


def format_summary(summary: dict[str, Any]) -> str:
    lines: list[str] = []

    checks = summary.get("checks", {})
    for name, tally in checks.items():
        if tally["fails"] == 0:
            lines.append(f"     ✓ {name}")
        else:
            lines.append(f"     ✗ {name}")
            lines.append(
                f"      ↳  {tally['rate'] * 100:.0f}% ✓ {tally['passes']} / ✗ {tally['fails']}"
            )
    if checks:
        lines.append("")
        passes = sum(tally["passes"] for tally in checks.values())
        fails = sum(tally["fails"] for tally in checks.values())
        rate = passes / (passes + fails) if passes + fails else 0.0
        lines.append(f"     {_label('checks')}: {rate * 100:.2f}% ✓ {passes} ✗ {fails}")

    for name, trend in summary.get("trends", {}).items():
        values = " ".join(f"{stat}={trend[stat]:.2f}" for stat in TREND_STATS)
        lines.append(f"     {_label(name)}: {values}")

    for name, counter in summary.get("counters", {}).items():
        lines.append(f"     {_label(name)}: {counter['count']} {counter['rate']:.2f}/s")

    run = summary.get("run")
    if run:
        lines.append(f"     {_label('vus')}: {run['vus']}")
        lines.append(f"     {_label('duration')}: {run['duration_s']:.2f}s")

    return "\n".join(lines)


def export_summary(summary: dict[str, Any], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2)
    LOGGER.info("Summary written to %s", path)
    return path


def export_samples(sink: MetricSink, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    df = sink.build_dataframe()
    df.to_csv(path, index=False)
    LOGGER.info("Saved %d samples to %s", len(df), path)
    return path


def _label(name: str) -> str:
    return name.ljust(LABEL_WIDTH, ".")


__all__ = [
    "build_summary",
    "export_samples",
    "export_summary",
    "format_summary",
    "summarize_trend",
]
