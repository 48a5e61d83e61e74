#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
behavior_core.py

Recode / merge / collapse / reshape core for the check-in behavior report.

Pipeline (one batch, all in memory):
  raw check-ins -> recode() -> merge_tested_untested() / merge_tested_predicted()
               -> collapse() -> assign_labels() -> to_long()

Behaviors (binary, per check-in):
  stayed home, social distancing, canceled appointments, face mask,
  face covering, and the derived mask wearing (= either face-covering item).

Every function returns a new DataFrame; inputs are never mutated.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats


# ----------------------------- columns -----------------------------

SESSION_COL = "session_id"
DAYS_COL = "days_since_test"
DAY_COL = "day"
INDICATOR_COL = "tested_predicted_indicator"
POSITIVE_COL = "positive"
CONTACT_COL = "estimate_people_contact"
NOBS_COL = "nobs"

GROUP_KEY: Tuple[str, str, str] = (DAY_COL, INDICATOR_COL, POSITIVE_COL)

TESTED = "Tested"
UNTESTED = "Untested"
PREDICTED = "Predicted"

NEW_SUFFIX = "_NEW"
MASK_COL = "mask_wearing" + NEW_SUFFIX


# ----------------------------- field config -----------------------------

@dataclass(frozen=True)
class BehaviorField:
    field: str
    true_token: str
    false_token: str
    label: str

    @property
    def new_col(self) -> str:
        return self.field + NEW_SUFFIX


_RAW_BEHAVIORS: List[Tuple[str, str]] = [
    ("combined_stayed_home", "Stayed home"),
    ("combined_social_distancing", "Social distancing"),
    ("combined_canceled_appointments", "Canceled appointments"),
    ("combined_face_mask", "Wore a face mask"),
    ("combined_face_covering", "Wore a face covering"),
]

# Tested and predicted check-ins store booleans as strings, untested check-ins use yes/no.
TRUE_FALSE_FIELDS: Tuple[BehaviorField, ...] = tuple(
    BehaviorField(f, "True", "False", lab) for f, lab in _RAW_BEHAVIORS
)
YES_NO_FIELDS: Tuple[BehaviorField, ...] = tuple(
    BehaviorField(f, "yes", "no", lab) for f, lab in _RAW_BEHAVIORS
)

MASK_SOURCE_COLS: Tuple[str, str] = (
    "combined_face_mask" + NEW_SUFFIX,
    "combined_face_covering" + NEW_SUFFIX,
)

BEHAVIOR_COLUMNS: List[str] = [f.new_col for f in TRUE_FALSE_FIELDS] + [MASK_COL]

BEHAVIOR_LABELS: Dict[str, str] = {f.new_col: f.label for f in TRUE_FALSE_FIELDS}
BEHAVIOR_LABELS[MASK_COL] = "Mask wearing"


# ----------------------------- label schemes -----------------------------

@dataclass(frozen=True)
class LabelScheme:
    """Maps (indicator, positive) to a composite cohort label with a fixed order."""
    name: str
    outcome_labels: Dict[Optional[int], str]
    order: Tuple[str, ...]

    def composite(self, indicator: str, outcome: str) -> str:
        return f"{indicator}-{outcome}" if outcome else str(indicator)


TEST_UNTESTED = LabelScheme(
    name="test_untested",
    outcome_labels={0: "Negative", 1: "Positive", None: ""},
    order=("Untested", "Tested-Negative", "Tested-Positive"),
)

TEST_PREDICTED = LabelScheme(
    name="test_predicted",
    outcome_labels={0: "Negative", 1: "Positive"},
    order=("Predicted-Negative", "Predicted-Positive", "Tested-Negative", "Tested-Positive"),
)


# ----------------------------- small utils -----------------------------

def require_cols(df: pd.DataFrame, cols: Iterable[str]) -> None:
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise KeyError(f"Missing columns: {missing}\nAvailable: {list(df.columns)}")


def validate_field_spec(df: pd.DataFrame, field_spec: Sequence[BehaviorField]) -> None:
    require_cols(df, [f.field for f in field_spec])
    new_cols = {f.new_col for f in field_spec}
    for c in MASK_SOURCE_COLS:
        if c not in new_cols:
            raise ValueError(f"Field spec must define the mask source field for {c}")


def as_str(s: pd.Series) -> pd.Series:
    return s.astype("string")


def to_day_count(s: pd.Series) -> pd.Series:
    """Signed day count (float). Timedeltas keep their fractional part."""
    if s.dtype.kind == "m":
        return s.dt.total_seconds() / 86400.0
    num = pd.to_numeric(s, errors="coerce").astype(float)
    needs = num.isna() & s.notna()
    if needs.any():
        td = pd.to_timedelta(as_str(s[needs]).astype(object), errors="coerce")
        num.loc[needs] = td.dt.total_seconds() / 86400.0
    return num


_POSITIVE_TOKENS: Dict[str, int] = {
    "0": 0, "1": 1, "0.0": 0, "1.0": 1, "False": 0, "True": 1,
}


def normalize_positive(s: pd.Series) -> pd.Series:
    """Outcome as nullable Int64 in {0, 1, <NA>}."""
    x = as_str(s).str.strip()
    out = x.map(_POSITIVE_TOKENS)
    bad = x.notna() & out.isna()
    if bad.any():
        examples = sorted(x[bad].unique().tolist())[:5]
        print(f"[WARN] {s.name}: {int(bad.sum())} values outside 0/1 recoded to missing: {examples}")
    return pd.to_numeric(out, errors="coerce").astype("Int64")


# ----------------------------- recoder -----------------------------

def recode_binary(s: pd.Series, true_token: str, false_token: str) -> pd.Series:
    x = as_str(s)
    out = pd.Series(np.nan, index=s.index, dtype=float)
    out[x.eq(true_token).fillna(False).to_numpy(dtype=bool)] = 1.0
    out[x.eq(false_token).fillna(False).to_numpy(dtype=bool)] = 0.0
    return out


def unexpected_tokens(df: pd.DataFrame, field_spec: Sequence[BehaviorField], source: str = "") -> pd.DataFrame:
    rows = []
    for f in field_spec:
        if f.field not in df.columns:
            continue
        x = as_str(df[f.field])
        bad = x.notna() & ~x.isin([f.true_token, f.false_token])
        n_bad = int(bad.sum())
        if n_bad:
            rows.append({
                "source": source,
                "field": f.field,
                "n_unexpected": n_bad,
                "examples": "|".join(sorted(x[bad].unique().tolist())[:5]),
            })
    return pd.DataFrame(rows, columns=["source", "field", "n_unexpected", "examples"])


def recode(df: pd.DataFrame, field_spec: Sequence[BehaviorField] = TRUE_FALSE_FIELDS, source: str = "") -> pd.DataFrame:
    return recode_with_qc(df, field_spec, source)[0]


def recode_with_qc(
    df: pd.DataFrame,
    field_spec: Sequence[BehaviorField] = TRUE_FALSE_FIELDS,
    source: str = "",
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """recode() plus the unexpected-token QC table it reported from."""
    validate_field_spec(df, field_spec)
    require_cols(df, [DAYS_COL])

    qc = unexpected_tokens(df, field_spec, source)
    for r in qc.itertuples(index=False):
        prefix = f"{source}: " if source else ""
        print(f"[WARN] {prefix}{r.field}: {r.n_unexpected} unexpected values recoded to missing ({r.examples})")

    out = df.copy()
    for f in field_spec:
        out[f.new_col] = recode_binary(out[f.field], f.true_token, f.false_token)

    # max() skips NaN; the result is NaN only when both items are missing
    out[MASK_COL] = out[list(MASK_SOURCE_COLS)].max(axis=1, skipna=True)

    out[DAY_COL] = to_day_count(out[DAYS_COL])
    if POSITIVE_COL in out.columns:
        out[POSITIVE_COL] = normalize_positive(out[POSITIVE_COL])
    else:
        out[POSITIVE_COL] = pd.Series(pd.NA, index=out.index, dtype="Int64")
    if CONTACT_COL in out.columns:
        out[CONTACT_COL] = pd.to_numeric(out[CONTACT_COL], errors="coerce").astype(float)
    return out, qc


# ----------------------------- merger -----------------------------

def tag_cohort(df: pd.DataFrame, label: str) -> pd.DataFrame:
    out = df.copy()
    if INDICATOR_COL not in out.columns:
        out[INDICATOR_COL] = label
    else:
        out[INDICATOR_COL] = as_str(out[INDICATOR_COL]).fillna(label).astype(object)
    return out


def _union(a: pd.DataFrame, b: pd.DataFrame) -> pd.DataFrame:
    return pd.concat([a, b], ignore_index=True, sort=False)


def session_keys(s: pd.Series) -> pd.Series:
    """Comparable session ids: whole-number floats lose their ".0" (1, 1.0 and "1" all give "1")."""
    num = pd.to_numeric(s, errors="coerce").astype(float)
    whole = (num.notna() & (num % 1 == 0)).to_numpy(dtype=bool)
    out = as_str(s).astype(object)
    out[whole] = num[whole].astype("int64").astype(str).to_numpy()
    return out


def overlapping_sessions(tested: pd.DataFrame, predicted: pd.DataFrame) -> List[str]:
    require_cols(tested, [SESSION_COL])
    require_cols(predicted, [SESSION_COL])
    shared = set(session_keys(tested[SESSION_COL]).dropna()) & set(session_keys(predicted[SESSION_COL]).dropna())
    return sorted(shared)


def predicted_keep_mask(tested: pd.DataFrame, predicted: pd.DataFrame) -> pd.Series:
    """True for predicted rows whose session never appears among the tested check-ins."""
    shared = overlapping_sessions(tested, predicted)
    keys = session_keys(predicted[SESSION_COL])
    return ~keys.isin(shared) | keys.isna()


def merge_tested_untested(tested: pd.DataFrame, untested: pd.DataFrame) -> pd.DataFrame:
    return _union(tested, untested)


def merge_tested_predicted(tested: pd.DataFrame, predicted: pd.DataFrame) -> pd.DataFrame:
    """Union of tested and predicted check-ins, dropping predicted sessions that were also tested."""
    shared = overlapping_sessions(tested, predicted)
    keep = predicted_keep_mask(tested, predicted)
    n_drop = int((~keep).sum())
    if n_drop:
        print(f"[INFO] Excluded {n_drop} predicted rows ({len(shared)} sessions) already in the tested population")
    return _union(tested, predicted.loc[keep])


# ----------------------------- collapser -----------------------------

def collapse(
    df: pd.DataFrame,
    behavior_cols: Sequence[str] = BEHAVIOR_COLUMNS,
    contact_col: str = CONTACT_COL,
) -> pd.DataFrame:
    """One row per (day, indicator, positive): behavior means, median contacts, nobs.

    Means and medians skip missing values; a group with no observed value
    gets a missing aggregate. nobs counts every check-in in the group.
    """
    require_cols(df, list(GROUP_KEY) + list(behavior_cols))
    work = df.copy()
    if contact_col not in work.columns:
        work[contact_col] = np.nan
    work[contact_col] = pd.to_numeric(work[contact_col], errors="coerce").astype(float)
    for c in behavior_cols:
        work[c] = pd.to_numeric(work[c], errors="coerce").astype(float)
    # concat with a source lacking the column can widen positive to float/object
    work[POSITIVE_COL] = normalize_positive(work[POSITIVE_COL])

    g = work.groupby(list(GROUP_KEY), dropna=False, sort=True)
    means = g[list(behavior_cols)].mean()
    n_contact = g[contact_col].count()
    median = g[contact_col].median().where(n_contact > 0, np.nan)
    nobs = g.size().rename(NOBS_COL)

    out = pd.concat([means, median.rename(contact_col), nobs], axis=1).reset_index()
    out[NOBS_COL] = out[NOBS_COL].astype(int)
    return out.sort_values(list(GROUP_KEY), kind="mergesort", na_position="last").reset_index(drop=True)


# ----------------------------- labels & reshape -----------------------------

def _outcome_label(v, scheme: LabelScheme) -> Optional[str]:
    key = None if pd.isna(v) else int(v)
    return scheme.outcome_labels.get(key)


def assign_labels(collapsed: pd.DataFrame, scheme: LabelScheme) -> pd.DataFrame:
    require_cols(collapsed, [INDICATOR_COL, POSITIVE_COL])
    out = collapsed.copy()
    outcome = out[POSITIVE_COL].map(lambda v: _outcome_label(v, scheme))
    cohort = [
        scheme.composite(ind, oc) if oc is not None else None
        for ind, oc in zip(out[INDICATOR_COL], outcome)
    ]
    out["outcome"] = outcome
    out["cohort"] = pd.Categorical(cohort, categories=list(scheme.order), ordered=True)

    unknown = out["cohort"].isna()
    if unknown.any():
        dropped = out.loc[unknown, [INDICATOR_COL, POSITIVE_COL]].astype(str).drop_duplicates()
        print(f"[WARN] {scheme.name}: dropped {int(unknown.sum())} groups with no cohort label: {dropped.to_dict('records')}")
        out = out.loc[~unknown]

    sort_cols = ["cohort"] + ([DAY_COL] if DAY_COL in out.columns else [])
    return out.sort_values(sort_cols, kind="mergesort").reset_index(drop=True)


LONG_ID_COLS: List[str] = [DAY_COL, INDICATOR_COL, POSITIVE_COL, "cohort", NOBS_COL]


def to_long(
    labeled: pd.DataFrame,
    behavior_cols: Sequence[str] = BEHAVIOR_COLUMNS,
    labels: Optional[Dict[str, str]] = None,
) -> pd.DataFrame:
    labels = BEHAVIOR_LABELS if labels is None else labels
    require_cols(labeled, LONG_ID_COLS + list(behavior_cols))

    long = labeled.melt(
        id_vars=LONG_ID_COLS,
        value_vars=list(behavior_cols),
        var_name="behavior",
        value_name="value",
    )
    long["behavior_label"] = long["behavior"].map(labels).fillna(long["behavior"])
    long["behavior"] = pd.Categorical(long["behavior"], categories=list(behavior_cols), ordered=True)
    long["cohort"] = pd.Categorical(long["cohort"], categories=labeled["cohort"].cat.categories, ordered=True)
    long = long.sort_values(["cohort", "behavior", DAY_COL], kind="mergesort").reset_index(drop=True)
    long["behavior"] = long["behavior"].astype(str)
    return long[[DAY_COL, INDICATOR_COL, POSITIVE_COL, "cohort", "behavior", "behavior_label", "value", NOBS_COL]]


def to_wide(long: pd.DataFrame) -> pd.DataFrame:
    """Pivot a long table back to one row per group, behaviors as columns."""
    require_cols(long, [DAY_COL, INDICATOR_COL, POSITIVE_COL, "behavior", "value", NOBS_COL])
    keys = [DAY_COL, INDICATOR_COL, POSITIVE_COL]
    work = long.assign(behavior=long["behavior"].astype(str))
    behaviors = list(pd.unique(work["behavior"]))
    # group id instead of a MultiIndex: keys may hold <NA>
    work["_gid"] = work.groupby([work[k].astype(str) for k in keys + [NOBS_COL]], sort=False).ngroup()
    values = work.pivot(index="_gid", columns="behavior", values="value")[behaviors]
    head = work.drop_duplicates("_gid").set_index("_gid")[keys + [NOBS_COL]]
    wide = head.join(values).reset_index(drop=True)
    wide.columns.name = None
    return wide.sort_values(keys, kind="mergesort", na_position="last").reset_index(drop=True)


# ----------------------------- proportion CIs -----------------------------

def exact_proportion_ci(k: int, n: int, confidence: float = 0.95) -> Tuple[float, float]:
    if n <= 0:
        return (np.nan, np.nan)
    ci = stats.binomtest(k=int(k), n=int(n), p=0.5).proportion_ci(confidence_level=confidence, method="exact")
    return float(ci.low), float(ci.high)


def proportion_ci_table(
    recoded: pd.DataFrame,
    behavior_cols: Sequence[str] = BEHAVIOR_COLUMNS,
    confidence: float = 0.95,
) -> pd.DataFrame:
    """Per group and behavior: observed n, number engaging, proportion and exact (Clopper-Pearson) CI."""
    require_cols(recoded, list(GROUP_KEY) + list(behavior_cols))
    rows = []
    for key, grp in recoded.groupby(list(GROUP_KEY), dropna=False, sort=True):
        day, indicator, positive = key
        for c in behavior_cols:
            x = pd.to_numeric(grp[c], errors="coerce").dropna()
            n = int(len(x))
            k = int((x == 1).sum())
            lo, hi = exact_proportion_ci(k, n, confidence)
            rows.append({
                DAY_COL: day,
                INDICATOR_COL: indicator,
                POSITIVE_COL: positive,
                "behavior": c,
                "n_nonmissing": n,
                "n_yes": k,
                "prop": (k / n) if n else np.nan,
                "ci_lo": lo,
                "ci_hi": hi,
            })
    out = pd.DataFrame(rows, columns=[
        DAY_COL, INDICATOR_COL, POSITIVE_COL, "behavior", "n_nonmissing", "n_yes", "prop", "ci_lo", "ci_hi",
    ])
    out[POSITIVE_COL] = out[POSITIVE_COL].astype("Int64")
    return out
