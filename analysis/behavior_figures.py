#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
behavior_figures.py

Time-course charts for the collapsed check-in tables:
  - behavior panels (long table): daily proportion per cohort + LOWESS line
  - median estimated contacts per cohort and day
  - check-ins per cohort and day (nobs)

Styles are passed in explicitly (ChartStyle); nothing here holds global state
apart from the matplotlib backend.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

import matplotlib
matplotlib.use("Agg")  # non-interactive backend, figures are only saved
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from statsmodels.nonparametric.smoothers_lowess import lowess

from behavior_core import CONTACT_COL, DAY_COL, NOBS_COL


# ----------------------------- style -----------------------------

@dataclass(frozen=True)
class ChartStyle:
    colors: Dict[str, str]
    linestyles: Dict[str, str] = field(default_factory=dict)
    markers: Dict[str, str] = field(default_factory=dict)
    title: str = ""

    def color(self, cohort: str) -> str:
        return self.colors.get(cohort, "0.4")

    def linestyle(self, cohort: str) -> str:
        return self.linestyles.get(cohort, "-")

    def marker(self, cohort: str) -> str:
        return self.markers.get(cohort, "o")


TEST_UNTESTED_STYLE = ChartStyle(
    colors={"Untested": "#7f7f7f", "Tested-Negative": "#1f77b4", "Tested-Positive": "#d62728"},
    linestyles={"Untested": ":", "Tested-Negative": "-", "Tested-Positive": "-"},
    markers={"Untested": "s", "Tested-Negative": "o", "Tested-Positive": "^"},
    title="Tested vs untested",
)

TEST_PREDICTED_STYLE = ChartStyle(
    colors={
        "Predicted-Negative": "#1f77b4",
        "Predicted-Positive": "#d62728",
        "Tested-Negative": "#1f77b4",
        "Tested-Positive": "#d62728",
    },
    linestyles={
        "Predicted-Negative": "--",
        "Predicted-Positive": "--",
        "Tested-Negative": "-",
        "Tested-Positive": "-",
    },
    markers={
        "Predicted-Negative": "x",
        "Predicted-Positive": "x",
        "Tested-Negative": "o",
        "Tested-Positive": "^",
    },
    title="Tested vs predicted",
)


# ----------------------------- helpers -----------------------------

def in_window(df: pd.DataFrame, window_days: Optional[float]) -> pd.DataFrame:
    if window_days is None:
        return df
    d = pd.to_numeric(df[DAY_COL], errors="coerce")
    return df.loc[d.between(-window_days, window_days)]


def smooth(x, y, frac: float = 0.4) -> Tuple[np.ndarray, np.ndarray]:
    """LOWESS fit over the non-missing points, sorted by x. Empty when < 3 points."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    ok = ~(np.isnan(x) | np.isnan(y))
    if ok.sum() < 3:
        return np.array([]), np.array([])
    fit = lowess(y[ok], x[ok], frac=frac, return_sorted=True)
    return fit[:, 0], fit[:, 1]


def _cohorts(df: pd.DataFrame):
    c = df["cohort"]
    if isinstance(c.dtype, pd.CategoricalDtype):
        return [k for k in c.cat.categories if (c == k).any()]
    return sorted(c.dropna().unique().tolist())


def _finish(fig, out_path: Path) -> Path:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, dpi=200, bbox_inches="tight")
    plt.close(fig)
    return out_path


def _mark_test_day(ax) -> None:
    ax.axvline(0, color="black", lw=0.8, ls="--", zorder=0)


# ----------------------------- figures -----------------------------

def plot_behavior_panels(
    long: pd.DataFrame,
    style: ChartStyle,
    out_path: Path,
    window_days: Optional[float] = 14,
    smooth_frac: float = 0.4,
    ncols: int = 3,
) -> Optional[Path]:
    df = in_window(long, window_days)
    df = df.loc[df["value"].notna()]
    if df.empty:
        return None

    behaviors = list(pd.unique(df["behavior"]))
    labels = df.drop_duplicates("behavior").set_index("behavior")["behavior_label"].to_dict()
    nrows = math.ceil(len(behaviors) / ncols)
    fig, axes = plt.subplots(nrows, ncols, figsize=(4.2 * ncols, 3.2 * nrows), sharex=True, squeeze=False)

    for ax, b in zip(axes.flat, behaviors):
        sub = df.loc[df["behavior"] == b]
        for cohort in _cohorts(sub):
            s = sub.loc[sub["cohort"] == cohort].sort_values(DAY_COL)
            ax.scatter(s[DAY_COL], s["value"], s=12, alpha=0.5,
                       color=style.color(cohort), marker=style.marker(cohort))
            xs, ys = smooth(s[DAY_COL], s["value"], smooth_frac)
            if xs.size:
                ax.plot(xs, ys, color=style.color(cohort), ls=style.linestyle(cohort), lw=1.6, label=cohort)
        _mark_test_day(ax)
        ax.set_title(labels.get(b, b), fontsize=10, loc="left")
        ax.set_ylim(-0.02, 1.02)
        ax.set_ylabel("Proportion", fontsize=9)

    for ax in axes.flat[len(behaviors):]:
        ax.axis("off")
    for ax in axes[-1, :]:
        ax.set_xlabel("Days since test", fontsize=9)

    handles, names = axes.flat[0].get_legend_handles_labels()
    if handles:
        fig.legend(handles, names, loc="lower center", ncol=len(names), frameon=False, bbox_to_anchor=(0.5, -0.04))
    if style.title:
        fig.suptitle(style.title, fontsize=12, fontweight="bold", x=0.01, ha="left")
    fig.tight_layout()
    return _finish(fig, out_path)


def _plot_daily_line(
    labeled: pd.DataFrame,
    col: str,
    style: ChartStyle,
    out_path: Path,
    ylabel: str,
    window_days: Optional[float],
) -> Optional[Path]:
    if col not in labeled.columns:
        return None
    df = in_window(labeled, window_days)
    df = df.loc[pd.to_numeric(df[col], errors="coerce").notna()]
    if df.empty:
        return None

    fig, ax = plt.subplots(figsize=(7.2, 4.0))
    for cohort in _cohorts(df):
        s = df.loc[df["cohort"] == cohort].sort_values(DAY_COL)
        ax.plot(s[DAY_COL], s[col], color=style.color(cohort), ls=style.linestyle(cohort),
                marker=style.marker(cohort), ms=3.5, lw=1.4, label=cohort)
    _mark_test_day(ax)
    ax.set_xlabel("Days since test")
    ax.set_ylabel(ylabel)
    if style.title:
        ax.set_title(style.title, loc="left", fontsize=11, fontweight="bold")
    ax.legend(frameon=False, fontsize=9)
    return _finish(fig, out_path)


def plot_contact_median(
    labeled: pd.DataFrame,
    style: ChartStyle,
    out_path: Path,
    window_days: Optional[float] = 14,
) -> Optional[Path]:
    return _plot_daily_line(labeled, CONTACT_COL, style, out_path, "Median estimated contacts", window_days)


def plot_nobs(
    labeled: pd.DataFrame,
    style: ChartStyle,
    out_path: Path,
    window_days: Optional[float] = 14,
) -> Optional[Path]:
    return _plot_daily_line(labeled, NOBS_COL, style, out_path, "Check-ins (n)", window_days)
