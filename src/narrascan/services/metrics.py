"""Run-level metrics computed from stored results."""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Optional

import numpy as np

from narrascan.repos.results_repo import ScoredRow

MetricsFn = Callable[[List[ScoredRow]], Dict[str, object]]


def _ratio(num: float, denom: float) -> Optional[float]:
    # Undefined ratios are reported as null, not 0.0
    return float(num / denom) if denom else None


def _positive_prob(row: ScoredRow) -> Optional[float]:
    """Model probability that the record is positive, from verdict + confidence."""
    if row.confidence is None or row.detected is None:
        return None
    return row.confidence if row.detected else 1.0 - row.confidence


def _ece(probs: List[float], labels: List[int], bins: int = 10) -> Optional[float]:
    if not probs:
        return None
    probs_arr = np.asarray(probs, dtype=float)
    labels_arr = np.asarray(labels, dtype=float)
    ece = 0.0
    for i in range(bins):
        lo = i / bins
        hi = (i + 1) / bins
        mask = (probs_arr >= lo) & (probs_arr < hi) if i < bins - 1 else (probs_arr >= lo) & (probs_arr <= hi)
        if not np.any(mask):
            continue
        avg_pred = float(np.mean(probs_arr[mask]))
        avg_obs = float(np.mean(labels_arr[mask]))
        ece += abs(avg_pred - avg_obs) * (np.sum(mask) / len(probs_arr))
    return float(ece)


def compute_run_metrics(rows: Iterable[ScoredRow]) -> Dict[str, object]:
    """
    Default metrics for a binary detection run.

    Classification metrics use rows that have a verdict, no error, and a
    ground-truth label. Counts cover every stored row.
    """
    rows_list = list(rows)
    ok_rows = [r for r in rows_list if not r.error_occurred and r.detected is not None]
    labelled = [r for r in ok_rows if r.ground_truth is not None]

    labels = np.asarray([int(r.ground_truth) for r in labelled], dtype=int)
    preds = np.asarray([1 if r.detected else 0 for r in labelled], dtype=int)

    tp = int(np.sum((preds == 1) & (labels == 1)))
    tn = int(np.sum((preds == 0) & (labels == 0)))
    fp = int(np.sum((preds == 1) & (labels == 0)))
    fn = int(np.sum((preds == 0) & (labels == 1)))

    precision = _ratio(tp, tp + fp)
    recall = _ratio(tp, tp + fn)
    f1 = None
    if precision is not None and recall is not None:
        f1 = _ratio(2 * precision * recall, precision + recall)

    confidences = [r.confidence for r in ok_rows if r.confidence is not None]
    elapsed = [r.elapsed_sec for r in rows_list if r.elapsed_sec is not None]

    prob_pairs = [(_positive_prob(r), int(r.ground_truth)) for r in labelled]
    prob_pairs = [(p, y) for p, y in prob_pairs if p is not None]

    return {
        "n_results": len(rows_list),
        "n_errors": sum(1 for r in rows_list if r.error_occurred),
        "n_scored": len(labelled),
        "n_positive_detected": sum(1 for r in ok_rows if r.detected),
        "n_negative_detected": sum(1 for r in ok_rows if not r.detected),
        "n_positive_manual": int(np.sum(labels == 1)),
        "n_negative_manual": int(np.sum(labels == 0)),
        "tp": tp,
        "tn": tn,
        "fp": fp,
        "fn": fn,
        "accuracy": _ratio(tp + tn, len(labelled)),
        "precision": precision,
        "recall": recall,
        "f1": f1,
        "mean_confidence": float(np.mean(confidences)) if confidences else None,
        "mean_elapsed_sec": float(np.mean(elapsed)) if elapsed else None,
        "ece": _ece([p for p, _ in prob_pairs], [y for _, y in prob_pairs]),
    }
