#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
behavior_runner.py

Batch runner for the check-in behavior report: self-reported behaviors
(staying home, social distancing, canceling appointments, mask wearing,
estimated contacts) in the days before and after a test event.

Inputs (one table per population; .csv / .parquet / .xlsx / .pkl):
  --tested     check-ins of tested individuals (positive = 0/1)
  --untested   check-ins of untested individuals (no outcome)
  --predicted  optional, check-ins of individuals predicted positive/negative

Comparisons:
  - tested vs untested  (Untested < Tested-Negative < Tested-Positive)
  - tested vs predicted (predicted sessions that were also tested are excluded)

Outputs (--out):
  collapsed_*.csv, long_*.csv, proportion_ci_*.csv, qc_unexpected_tokens.csv,
  flow_counts.csv, figure_*.png, analysis_manifest.json

Run:
  python behavior_runner.py --tested tested.parquet --untested untested.parquet
      --predicted predicted.parquet --out outputs
"""

from __future__ import annotations

import argparse
import hashlib
import json
import platform
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import matplotlib
import numpy as np
import pandas as pd
import scipy
import statsmodels

from behavior_core import (
    BEHAVIOR_COLUMNS,
    PREDICTED,
    SESSION_COL,
    TEST_PREDICTED,
    TEST_UNTESTED,
    TESTED,
    TRUE_FALSE_FIELDS,
    UNTESTED,
    YES_NO_FIELDS,
    assign_labels,
    collapse,
    merge_tested_predicted,
    merge_tested_untested,
    overlapping_sessions,
    predicted_keep_mask,
    proportion_ci_table,
    recode_with_qc,
    tag_cohort,
    to_long,
)
from behavior_figures import (
    TEST_PREDICTED_STYLE,
    TEST_UNTESTED_STYLE,
    plot_behavior_panels,
    plot_contact_median,
    plot_nobs,
)


# ----------------------------- small utils -----------------------------

def now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def safe_mkdir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def write_json(path: Path, obj: object) -> None:
    path.write_text(json.dumps(obj, indent=2, ensure_ascii=False), encoding="utf-8")


# ----------------------------- config -----------------------------

@dataclass
class RunConfig:
    tested: Path
    untested: Path
    predicted: Optional[Path]
    out: Path
    window_days: float
    smooth_frac: float
    figures: bool


def parse_args(argv: Optional[Sequence[str]] = None) -> RunConfig:
    p = argparse.ArgumentParser(description="Check-in behavior time-course report.")
    p.add_argument("--tested", required=True, type=Path)
    p.add_argument("--untested", required=True, type=Path)
    p.add_argument("--predicted", default=None, type=Path)
    p.add_argument("--out", required=True, type=Path)

    p.add_argument("--window-days", type=float, default=14.0,
                   help="Days before/after the test shown in figures (tables are not windowed).")
    p.add_argument("--smooth-frac", type=float, default=0.4,
                   help="LOWESS span for the behavior panels.")
    p.add_argument("--no-figures", action="store_true")
    a = p.parse_args(argv)

    if a.window_days <= 0:
        p.error("--window-days must be > 0")
    if not 0 < a.smooth_frac <= 1:
        p.error("--smooth-frac must be in (0, 1]")

    return RunConfig(
        tested=a.tested,
        untested=a.untested,
        predicted=a.predicted,
        out=a.out,
        window_days=a.window_days,
        smooth_frac=a.smooth_frac,
        figures=not a.no_figures,
    )


# ----------------------------- IO -----------------------------

def load_table(path: Path) -> pd.DataFrame:
    if not path.exists():
        raise FileNotFoundError(f"Input table not found: {path}")
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return pd.read_csv(path)
    if suffix == ".parquet":
        return pd.read_parquet(path, engine="pyarrow")
    if suffix in (".xlsx", ".xls"):
        return pd.read_excel(path)
    if suffix in (".pkl", ".pickle"):
        return pd.read_pickle(path)
    raise ValueError(f"Unsupported input format '{suffix}' for {path} (expected .csv, .parquet, .xlsx, .pkl)")


# ----------------------------- pipeline -----------------------------

def flow_counts(
    tested: pd.DataFrame,
    untested: pd.DataFrame,
    predicted: Optional[pd.DataFrame],
    combined: Dict[str, pd.DataFrame],
) -> pd.DataFrame:
    def n_sessions(df: pd.DataFrame) -> int:
        return int(df[SESSION_COL].nunique()) if SESSION_COL in df.columns else 0

    rows = [
        ("tested_rows", int(len(tested))),
        ("tested_sessions", n_sessions(tested)),
        ("untested_rows", int(len(untested))),
        ("untested_sessions", n_sessions(untested)),
    ]
    if predicted is not None:
        shared = overlapping_sessions(tested, predicted)
        n_excl = int((~predicted_keep_mask(tested, predicted)).sum())
        rows += [
            ("predicted_rows", int(len(predicted))),
            ("predicted_sessions", n_sessions(predicted)),
            ("predicted_sessions_also_tested", len(shared)),
            ("predicted_rows_excluded", n_excl),
        ]
    for name, df in combined.items():
        rows.append((f"{name}_rows", int(len(df))))
    return pd.DataFrame(rows, columns=["metric", "value"])


def _comparison(combined: pd.DataFrame, scheme) -> Dict[str, pd.DataFrame]:
    collapsed = collapse(combined)
    labeled = assign_labels(collapsed, scheme)
    return {
        "collapsed": collapsed,
        "labeled": labeled,
        "long": to_long(labeled),
        "proportion_ci": proportion_ci_table(combined),
    }


def run_pipeline(
    tested: pd.DataFrame,
    untested: pd.DataFrame,
    predicted: Optional[pd.DataFrame] = None,
) -> Dict[str, pd.DataFrame]:
    """Recode each population, merge, collapse and reshape. No IO."""
    t, qc_t = recode_with_qc(tag_cohort(tested, TESTED), TRUE_FALSE_FIELDS, source="tested")
    u, qc_u = recode_with_qc(tag_cohort(untested, UNTESTED), YES_NO_FIELDS, source="untested")
    qc = [qc_t, qc_u]

    combined = {"test_untested": merge_tested_untested(t, u)}
    if predicted is not None:
        pr, qc_p = recode_with_qc(tag_cohort(predicted, PREDICTED), TRUE_FALSE_FIELDS, source="predicted")
        qc.append(qc_p)
        combined["test_predicted"] = merge_tested_predicted(t, pr)

    schemes = {"test_untested": TEST_UNTESTED, "test_predicted": TEST_PREDICTED}
    tables: Dict[str, pd.DataFrame] = {}
    for name, df in combined.items():
        for kind, table in _comparison(df, schemes[name]).items():
            tables[f"{kind}_{name}"] = table
        print(f"[INFO] {name}: {len(df)} check-ins -> {len(tables['collapsed_' + name])} groups")

    tables["qc_unexpected_tokens"] = pd.concat(qc, ignore_index=True)
    tables["flow_counts"] = flow_counts(tested, untested, predicted, combined)
    return tables


# ----------------------------- outputs -----------------------------

TABLE_PREFIXES = ("collapsed_", "long_", "proportion_ci_", "qc_", "flow_")


def write_tables(tables: Dict[str, pd.DataFrame], out_dir: Path) -> List[Path]:
    written = []
    for name, df in tables.items():
        if not name.startswith(TABLE_PREFIXES):
            continue
        path = out_dir / f"{name}.csv"
        df.to_csv(path, index=False)
        written.append(path)
    return written


def write_figures(tables: Dict[str, pd.DataFrame], out_dir: Path, cfg: RunConfig) -> List[Path]:
    styles = {"test_untested": TEST_UNTESTED_STYLE, "test_predicted": TEST_PREDICTED_STYLE}
    written: List[Path] = []
    for name, style in styles.items():
        if f"labeled_{name}" not in tables:
            continue
        labeled, long = tables[f"labeled_{name}"], tables[f"long_{name}"]
        paths = [
            plot_behavior_panels(long, style, out_dir / f"figure_behaviors_{name}.png",
                                 window_days=cfg.window_days, smooth_frac=cfg.smooth_frac),
            plot_contact_median(labeled, style, out_dir / f"figure_contacts_{name}.png", window_days=cfg.window_days),
            plot_nobs(labeled, style, out_dir / f"figure_nobs_{name}.png", window_days=cfg.window_days),
        ]
        for p in paths:
            if p is None:
                print(f"[WARN] {name}: nothing to plot inside the +/-{cfg.window_days:g} day window")
            else:
                written.append(p)
    return written


def _collect_outputs_for_manifest(out_dir: Path) -> List[Path]:
    files: List[Path] = []
    for p in sorted(out_dir.glob("*")):
        if p.is_file() and p.name != "analysis_manifest.json":
            files.append(p)
    return files


def write_manifest(out_dir: Path, cfg: RunConfig) -> Path:
    inputs = {"tested": cfg.tested, "untested": cfg.untested}
    if cfg.predicted is not None:
        inputs["predicted"] = cfg.predicted
    payload = {
        "created_utc": now_iso(),
        "inputs_sha256": {k: sha256_file(v) for k, v in inputs.items()},
        "script_sha256": sha256_file(Path(__file__)),
        "analysis_manifest_excluded_from_outputs": True,
        "outputs": [{"path": p.name, "sha256": sha256_file(p)} for p in _collect_outputs_for_manifest(out_dir)],
        "runtime": {
            "python": sys.version.split()[0],
            "platform": platform.platform(),
            "numpy": getattr(np, "__version__", "NA"),
            "pandas": getattr(pd, "__version__", "NA"),
            "scipy": getattr(scipy, "__version__", "NA"),
            "statsmodels": getattr(statsmodels, "__version__", "NA"),
            "matplotlib": getattr(matplotlib, "__version__", "NA"),
        },
        "config": {
            "window_days": cfg.window_days,
            "smooth_frac": cfg.smooth_frac,
            "figures": cfg.figures,
            "behaviors": list(BEHAVIOR_COLUMNS),
            "tokens": {
                "tested": {f.field: [f.true_token, f.false_token] for f in TRUE_FALSE_FIELDS},
                "untested": {f.field: [f.true_token, f.false_token] for f in YES_NO_FIELDS},
                "predicted": {f.field: [f.true_token, f.false_token] for f in TRUE_FALSE_FIELDS},
            },
        },
    }
    path = out_dir / "analysis_manifest.json"
    write_json(path, payload)
    return path


# ----------------------------- main -----------------------------

def main(argv: Optional[Sequence[str]] = None) -> None:
    cfg = parse_args(argv)
    safe_mkdir(cfg.out)

    tested = load_table(cfg.tested)
    untested = load_table(cfg.untested)
    predicted = load_table(cfg.predicted) if cfg.predicted is not None else None
    print(f"[INFO] Loaded tested={len(tested)} untested={len(untested)} "
          f"predicted={len(predicted) if predicted is not None else 'NA'} rows")

    tables = run_pipeline(tested, untested, predicted)

    for p in write_tables(tables, cfg.out):
        print(f"[OK] Wrote {p}")
    if cfg.figures:
        for p in write_figures(tables, cfg.out, cfg):
            print(f"[OK] Wrote {p}")

    write_manifest(cfg.out, cfg)
    print(f"[OK] Outputs written to: {cfg.out.resolve()}")


if __name__ == "__main__":
    main()
