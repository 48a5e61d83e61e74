"""
Tests for the time-course chart helpers.
"""

import numpy as np
import pandas as pd

import behavior_core as bc
import behavior_figures as bf


def _labeled(days=range(-5, 6)):
    rows = []
    for d in days:
        for ind, pos in [("Untested", None), ("Tested", 0), ("Tested", 1)]:
            rows.append({
                "day": float(d),
                "tested_predicted_indicator": ind,
                "positive": pos,
                "estimate_people_contact": 3.0 + d,
                "nobs": 10,
                **{c: 0.5 + 0.02 * d for c in bc.BEHAVIOR_COLUMNS},
            })
    df = pd.DataFrame(rows)
    df["positive"] = df["positive"].astype("Int64")
    return bc.assign_labels(df, bc.TEST_UNTESTED)


def test_in_window_is_inclusive():
    df = pd.DataFrame({"day": [-15.0, -14.0, 0.0, 14.0, 14.5]})
    assert bf.in_window(df, 14)["day"].tolist() == [-14.0, 0.0, 14.0]
    assert len(bf.in_window(df, None)) == 5


def test_smooth_needs_three_points():
    xs, ys = bf.smooth([0, 1], [0.2, 0.4])
    assert xs.size == 0 and ys.size == 0

    x = np.arange(-5, 6, dtype=float)
    y = 0.5 + 0.01 * x
    y[3] = np.nan
    xs, ys = bf.smooth(x, y, frac=0.6)
    assert xs.size == 10
    assert np.all(np.diff(xs) >= 0)


def test_style_falls_back_for_unknown_cohort():
    assert bf.TEST_UNTESTED_STYLE.color("Other") == "0.4"
    assert bf.TEST_UNTESTED_STYLE.linestyle("Untested") == ":"
    assert bf.TEST_PREDICTED_STYLE.marker("Predicted-Positive") == "x"


def test_plot_behavior_panels_writes_png(tmp_path):
    long = bc.to_long(_labeled())
    out = bf.plot_behavior_panels(long, bf.TEST_UNTESTED_STYLE, tmp_path / "behaviors.png")
    assert out == tmp_path / "behaviors.png"
    assert out.stat().st_size > 0


def test_plot_behavior_panels_empty_window_returns_none(tmp_path):
    long = bc.to_long(_labeled(days=[30, 31]))
    assert bf.plot_behavior_panels(long, bf.TEST_UNTESTED_STYLE, tmp_path / "b.png", window_days=14) is None
    assert not (tmp_path / "b.png").exists()


def test_contact_and_nobs_charts(tmp_path):
    labeled = _labeled()
    c = bf.plot_contact_median(labeled, bf.TEST_UNTESTED_STYLE, tmp_path / "contacts.png")
    n = bf.plot_nobs(labeled, bf.TEST_UNTESTED_STYLE, tmp_path / "nobs.png")
    assert c.exists() and n.exists()


def test_contact_chart_skips_all_missing(tmp_path):
    labeled = _labeled().assign(estimate_people_contact=np.nan)
    assert bf.plot_contact_median(labeled, bf.TEST_UNTESTED_STYLE, tmp_path / "c.png") is None
