"""Pair Formio submissions with BAP status records into rebate aggregates.

No network calls here: functions accept already-fetched, already-authorized
records. Malformed or partial input never raises; missing sides stay None and
anything unexpected is reported as an `AnomalousMatch`.

Join keys:
- FRF: `bap.form_id == formio.id`. The aggregate key is the BAP rebate id, or
  `"_" + formio.id` while the ETL has not yet picked the submission up.
- PRF/CRF: the Formio submission carries the rebate id in a hidden field set at
  creation; it is attached to the aggregate with that key, and the BAP record
  for the same stage and rebate id (if any) is attached beside it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Iterable

from src.backend.rebates.use_cases.rebate_models import (
    BapStatusRecord,
    FormSubmission,
    FormType,
    RebateAggregate,
    StagePair,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True, slots=True)
class AnomalousMatch:
    kind: str
    form_type: FormType
    rebate_key: str | None
    kept_id: str | None = None
    dropped_ids: tuple[str, ...] = ()
    detail: str = ""


@dataclass(slots=True)
class MatchResult:
    aggregates: list[RebateAggregate] = field(default_factory=list)
    anomalies: list[AnomalousMatch] = field(default_factory=list)


def synthetic_rebate_key(formio_id: str) -> str:
    return f"_{formio_id}"


def _modified_key(modified: datetime | None) -> datetime:
    return modified or _EPOCH


def _newest_submission(subs: list[FormSubmission]) -> FormSubmission:
    # Ties keep the first seen (Formio lists newest-first).
    best = subs[0]
    for sub in subs[1:]:
        if sub.modified > best.modified:
            best = sub
    return best


def _newest_record(records: list[BapStatusRecord]) -> BapStatusRecord:
    best = records[0]
    for rec in records[1:]:
        if _modified_key(rec.modified) > _modified_key(best.modified):
            best = rec
    return best


def _record(anomalies: list[AnomalousMatch], anomaly: AnomalousMatch) -> None:
    anomalies.append(anomaly)
    logger.warning(
        "Anomalous %s match (%s) for rebate %s: kept=%s dropped=%s %s",
        anomaly.form_type.value.upper(),
        anomaly.kind,
        anomaly.rebate_key,
        anomaly.kept_id,
        list(anomaly.dropped_ids),
        anomaly.detail,
    )


def _bap_for_stage(
    records: Iterable[BapStatusRecord], *, rebate_year: str, form_type: FormType
) -> list[BapStatusRecord]:
    return [r for r in records if r.rebate_year == rebate_year and r.form_type == form_type]


def _index_bap_by(
    records: list[BapStatusRecord],
    key_fn,
    *,
    form_type: FormType,
    anomalies: list[AnomalousMatch],
) -> dict[str, BapStatusRecord]:
    grouped: dict[str, list[BapStatusRecord]] = {}
    for rec in records:
        k = key_fn(rec)
        if k:
            grouped.setdefault(k, []).append(rec)

    out: dict[str, BapStatusRecord] = {}
    for k, recs in grouped.items():
        winner = _newest_record(recs)
        out[k] = winner
        if len(recs) > 1:
            _record(
                anomalies,
                AnomalousMatch(
                    kind="duplicate_bap_record",
                    form_type=form_type,
                    rebate_key=winner.rebate_id,
                    kept_id=winner.review_item_id,
                    dropped_ids=tuple(r.review_item_id or "" for r in recs if r is not winner),
                    detail=f"{len(recs)} BAP records share join key {k!r}",
                ),
            )
    return out


def _match_frfs(
    frf_submissions: list[FormSubmission],
    bap_frfs: list[BapStatusRecord],
    *,
    rebate_year: str,
    anomalies: list[AnomalousMatch],
) -> dict[str, RebateAggregate]:
    bap_by_form_id = _index_bap_by(
        bap_frfs, lambda r: r.form_id, form_type=FormType.FRF, anomalies=anomalies
    )

    candidates: dict[str, list[tuple[FormSubmission, BapStatusRecord | None]]] = {}
    order: list[str] = []
    matched_form_ids: set[str] = set()
    for sub in frf_submissions:
        bap = bap_by_form_id.get(sub.id)
        if bap is not None:
            matched_form_ids.add(sub.id)
        key = bap.rebate_id if bap is not None and bap.rebate_id else synthetic_rebate_key(sub.id)
        if key not in candidates:
            order.append(key)
        candidates.setdefault(key, []).append((sub, bap))

    aggregates: dict[str, RebateAggregate] = {}
    for key in order:
        pairs = candidates[key]
        winner_sub = _newest_submission([sub for sub, _ in pairs])
        winner_bap = next(bap for sub, bap in pairs if sub is winner_sub)
        if len(pairs) > 1:
            _record(
                anomalies,
                AnomalousMatch(
                    kind="duplicate_formio_submission",
                    form_type=FormType.FRF,
                    rebate_key=key,
                    kept_id=winner_sub.id,
                    dropped_ids=tuple(sub.id for sub, _ in pairs if sub is not winner_sub),
                    detail=f"{len(pairs)} FRF submissions resolve to the same rebate",
                ),
            )
        aggregates[key] = RebateAggregate(
            key=key,
            rebate_year=rebate_year,
            frf=StagePair(formio=winner_sub, bap=winner_bap),
        )

    for form_id, bap in bap_by_form_id.items():
        if form_id not in matched_form_ids:
            _record(
                anomalies,
                AnomalousMatch(
                    kind="orphan_bap_record",
                    form_type=FormType.FRF,
                    rebate_key=bap.rebate_id,
                    dropped_ids=(bap.review_item_id or form_id,),
                    detail="BAP record has no matching Formio submission",
                ),
            )

    return aggregates


def _attach_downstream(
    aggregates: dict[str, RebateAggregate],
    submissions: list[FormSubmission],
    bap_records: list[BapStatusRecord],
    *,
    form_type: FormType,
    anomalies: list[AnomalousMatch],
) -> None:
    bap_by_rebate_id = _index_bap_by(
        bap_records, lambda r: r.rebate_id, form_type=form_type, anomalies=anomalies
    )

    grouped: dict[str, list[FormSubmission]] = {}
    for sub in submissions:
        if not sub.rebate_id or sub.rebate_id not in aggregates:
            _record(
                anomalies,
                AnomalousMatch(
                    kind="orphan_formio_submission",
                    form_type=form_type,
                    rebate_key=sub.rebate_id,
                    dropped_ids=(sub.id,),
                    detail="Formio submission does not reference a known rebate",
                ),
            )
            continue
        grouped.setdefault(sub.rebate_id, []).append(sub)

    attached: set[str] = set()
    for rebate_id, subs in grouped.items():
        winner = _newest_submission(subs)
        if len(subs) > 1:
            _record(
                anomalies,
                AnomalousMatch(
                    kind="duplicate_formio_submission",
                    form_type=form_type,
                    rebate_key=rebate_id,
                    kept_id=winner.id,
                    dropped_ids=tuple(s.id for s in subs if s is not winner),
                    detail=f"{len(subs)} {form_type.value.upper()} submissions for one rebate",
                ),
            )
        pair = StagePair(formio=winner, bap=bap_by_rebate_id.get(rebate_id))
        aggregates[rebate_id] = replace(aggregates[rebate_id], **{form_type.value: pair})
        attached.add(rebate_id)

    for rebate_id, bap in bap_by_rebate_id.items():
        if rebate_id not in attached:
            _record(
                anomalies,
                AnomalousMatch(
                    kind="orphan_bap_record",
                    form_type=form_type,
                    rebate_key=rebate_id,
                    dropped_ids=(bap.review_item_id or rebate_id,),
                    detail="BAP record has no matching Formio submission",
                ),
            )


def match_submissions(
    *,
    rebate_year: str,
    frf_submissions: list[FormSubmission],
    prf_submissions: list[FormSubmission],
    crf_submissions: list[FormSubmission],
    bap_records: list[BapStatusRecord],
) -> MatchResult:
    """Build one `RebateAggregate` per distinct rebate for `rebate_year`.

    `bap_records` may span every stage and year; only the matching slices are used.
    Aggregates come back in first-seen FRF order; ordering for display is the
    sorter's job.
    """

    anomalies: list[AnomalousMatch] = []

    aggregates = _match_frfs(
        frf_submissions,
        _bap_for_stage(bap_records, rebate_year=rebate_year, form_type=FormType.FRF),
        rebate_year=rebate_year,
        anomalies=anomalies,
    )
    _attach_downstream(
        aggregates,
        prf_submissions,
        _bap_for_stage(bap_records, rebate_year=rebate_year, form_type=FormType.PRF),
        form_type=FormType.PRF,
        anomalies=anomalies,
    )
    _attach_downstream(
        aggregates,
        crf_submissions,
        _bap_for_stage(bap_records, rebate_year=rebate_year, form_type=FormType.CRF),
        form_type=FormType.CRF,
        anomalies=anomalies,
    )

    return MatchResult(aggregates=list(aggregates.values()), anomalies=anomalies)
