from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

from .metrics import DIAL_TIME

LOGGER = logging.getLogger("phxload.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 300
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

DIAL_COLOR = "#2E86AB"
MEDIAN_COLOR = "#6A994E"
P95_COLOR = "#C73E1D"


def render_dial_time_chart(samples: pd.DataFrame, chart_path: Path) -> Path | None:
    """Histogram and ECDF of handshake latency across all VUs."""
    if samples.empty or "metric" not in samples.columns:
        LOGGER.warning("No samples available for dial time chart")
        return None

    values = samples.loc[samples["metric"] == DIAL_TIME, "value"].astype("float64")
    values = values[values.notna() & (values >= 0)]
    if values.empty:
        LOGGER.warning("No valid %s samples after filtering", DIAL_TIME)
        return None

    median = values.median()
    p95 = values.quantile(0.95)

    fig, (hist_ax, ecdf_ax) = plt.subplots(1, 2, figsize=(14, 5))

    sns.histplot(values, ax=hist_ax, color=DIAL_COLOR, bins=min(50, max(values.size // 2, 5)))
    for ax in (hist_ax, ecdf_ax):
        ax.axvline(median, color=MEDIAN_COLOR, linestyle="--", linewidth=1.5, label=f"median {median:.1f}ms")
        ax.axvline(p95, color=P95_COLOR, linestyle=":", linewidth=1.5, label=f"p(95) {p95:.1f}ms")
    hist_ax.set_title("Dial Time Distribution", fontweight="bold", pad=12)
    hist_ax.set_xlabel("Dial time (ms)", fontweight="semibold")
    hist_ax.set_ylabel("Connections", fontweight="semibold")
    hist_ax.legend(frameon=True)

    sns.ecdfplot(values, ax=ecdf_ax, color=DIAL_COLOR, linewidth=2)
    ecdf_ax.set_title("Dial Time ECDF", fontweight="bold", pad=12)
    ecdf_ax.set_xlabel("Dial time (ms)", fontweight="semibold")
    ecdf_ax.set_ylabel("Share of connections", fontweight="semibold")

    fig.suptitle(f"WebSocket dial time ({values.size} connections)", fontweight="bold")
    fig.tight_layout()

    chart_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white", edgecolor="none")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)
    return chart_path


__all__ = ["render_dial_time_chart"]
