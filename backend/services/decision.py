from typing import Mapping

from backend.config import DECISION_MODE, SCORE_PENDING_MAX, SCORE_PRESENT_MAX


def decide(
    liveness_confirmed: bool,
    score: float | None = None,
    *,
    mode: str | None = None,
    present_max: float | None = None,
    pending_max: float | None = None,
) -> str:
    """
    Map a verification attempt to an attendance status.

    mode "liveness": confirmed liveness is enough for `present`; anything else
    stays `pending` for teacher review. Never returns `rejected`.

    mode "score": `score` is a face-distance (lower is a better match).
      - liveness not confirmed, or no score -> pending
      - score <= present_max                -> present
      - score <= pending_max                -> pending
      - otherwise                           -> rejected
    """
    active_mode = mode or DECISION_MODE

    if not liveness_confirmed:
        return "pending"

    if active_mode != "score":
        return "present"

    if score is None:
        return "pending"

    present_cutoff = SCORE_PRESENT_MAX if present_max is None else present_max
    pending_cutoff = SCORE_PENDING_MAX if pending_max is None else pending_max
    if score <= present_cutoff:
        return "present"
    if score <= pending_cutoff:
        return "pending"
    return "rejected"


def automatic_status(record: Mapping, *, mode: str | None = None) -> str:
    # What the check-in path alone would have left on this record.
    if record.get("liveness") is None:
        return "pending" if record.get("checkin_time") else "absent"
    return decide(bool(record["liveness"]), record.get("verification_score"), mode=mode)
