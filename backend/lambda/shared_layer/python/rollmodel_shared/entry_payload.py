"""rollmodel_shared.entry_payload — Validation of entry create/update bodies.

Every failure raises ApiError INVALID_REQUEST with a message naming the
offending field, e.g. "Entry payload is invalid: quickAdd.rounds must be a
number.".
"""

from __future__ import annotations

import re
from typing import Any, Dict

from rollmodel_shared.entries import is_valid_media_attachments_input
from rollmodel_shared.http_utils import ApiError, _require_json_object
from rollmodel_shared.session_review import (
    normalize_finalized_session_review,
    normalize_session_review_artifact,
)

ENTRY_TAGS = {"guard-type", "top", "bottom", "submission", "sweep", "pass", "escape", "takedown"}
TEMPLATE_IDS = {"class-notes", "open-mat-rounds", "drill-session"}
STRUCTURED_FIELDS = ("position", "technique", "outcome", "problem", "cue", "constraint")
CONFIRMABLE_FIELDS = ("position", "technique", "outcome", "problem", "cue")
CONFIRMATION_STATUSES = ("confirmed", "corrected", "rejected")

_KEBAB_TAG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def _invalid(message: str) -> ApiError:
    return ApiError.invalid(f"Entry payload is invalid: {message}")


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_str_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


def _require_dict(value: Any, path: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise _invalid(f"{path} must be an object.")
    return value


def _require_str(record: Dict[str, Any], key: str, path: str) -> None:
    if not isinstance(record.get(key), str):
        raise _invalid(f"{path}.{key} must be a string.")


def _require_number(record: Dict[str, Any], key: str, path: str) -> None:
    if not is_number(record.get(key)):
        raise _invalid(f"{path}.{key} must be a number.")


def _optional_str(record: Dict[str, Any], key: str, path: str) -> None:
    if key in record and record[key] is not None and not isinstance(record[key], str):
        raise _invalid(f"{path}.{key} must be a string.")


def _validate_string_array(value: Any, path: str) -> None:
    if not _is_str_list(value):
        raise _invalid(f"{path} must be an array of strings.")


def _validate_tag_array(value: Any, path: str) -> None:
    _validate_string_array(value, path)
    for tag in value:
        normalized = tag.strip().lower()
        if not normalized or not _KEBAB_TAG_RE.match(normalized):
            raise _invalid(f'{path} contains invalid tag "{tag}". Use lowercase kebab-case tags.')


def is_action_pack_like(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and isinstance(value.get("wins"), list)
        and isinstance(value.get("leaks"), list)
        and isinstance(value.get("oneFocus"), str)
        and isinstance(value.get("drills"), list)
        and isinstance(value.get("positionalRequests"), list)
        and isinstance(value.get("fallbackDecisionGuidance"), str)
        and isinstance(value.get("confidenceFlags"), list)
    )


def _validate_quick_add(payload: Dict[str, Any]) -> None:
    quick_add = _require_dict(payload.get("quickAdd"), "quickAdd")
    for key in ("time", "class", "gym"):
        _require_str(quick_add, key, "quickAdd")
    _validate_string_array(quick_add.get("partners"), "quickAdd.partners")
    _require_number(quick_add, "rounds", "quickAdd")
    _require_str(quick_add, "notes", "quickAdd")


def _validate_tags(payload: Dict[str, Any]) -> None:
    tags = payload.get("tags")
    _validate_string_array(tags, "tags")
    for tag in tags:
        if tag not in ENTRY_TAGS:
            raise _invalid(f'tags contains unsupported value "{tag}".')


def _validate_structured(payload: Dict[str, Any]) -> None:
    if payload.get("structured") is None:
        return
    structured = _require_dict(payload["structured"], "structured")
    for key in STRUCTURED_FIELDS:
        _optional_str(structured, key, "structured")


def _validate_sections_and_metrics(payload: Dict[str, Any]) -> None:
    sections = _require_dict(payload.get("sections"), "sections")
    _require_str(sections, "private", "sections")
    _require_str(sections, "shared", "sections")

    metrics = _require_dict(payload.get("sessionMetrics"), "sessionMetrics")
    for key in ("durationMinutes", "intensity", "rounds"):
        _require_number(metrics, key, "sessionMetrics")
    _require_str(metrics, "giOrNoGi", "sessionMetrics")
    _validate_string_array(metrics.get("tags"), "sessionMetrics.tags")


def _validate_session_context(payload: Dict[str, Any]) -> None:
    if payload.get("sessionContext") is None:
        return
    context = _require_dict(payload["sessionContext"], "sessionContext")
    _optional_str(context, "ruleset", "sessionContext")
    fatigue = context.get("fatigueLevel")
    if fatigue is not None:
        if not is_number(fatigue):
            raise _invalid("sessionContext.fatigueLevel must be a number.")
        if fatigue < 1 or fatigue > 10:
            raise _invalid("sessionContext.fatigueLevel must be between 1 and 10.")
    if context.get("injuryNotes") is not None:
        _validate_string_array(context["injuryNotes"], "sessionContext.injuryNotes")
    if context.get("tags") is not None:
        _validate_tag_array(context["tags"], "sessionContext.tags")


def _validate_partner_outcomes(payload: Dict[str, Any]) -> None:
    outcomes = payload.get("partnerOutcomes")
    if outcomes is None:
        return
    if not isinstance(outcomes, list):
        raise _invalid("partnerOutcomes must be an array.")
    for index, item in enumerate(outcomes):
        path = f"partnerOutcomes[{index}]"
        outcome = _require_dict(item, path)
        partner_id = outcome.get("partnerId")
        if not isinstance(partner_id, str) or not partner_id.strip():
            raise _invalid(f"{path}.partnerId must be a non-empty string.")
        if outcome.get("styleTags") is not None:
            _validate_tag_array(outcome["styleTags"], f"{path}.styleTags")
        _validate_string_array(outcome.get("whatWorked"), f"{path}.whatWorked")
        _validate_string_array(outcome.get("whatFailed"), f"{path}.whatFailed")
        _optional_str(outcome, "partnerDisplayName", path)
        if outcome.get("guidance") is None:
            continue
        guidance = _require_dict(outcome["guidance"], f"{path}.guidance")
        _optional_str(guidance, "draft", f"{path}.guidance")
        _optional_str(guidance, "final", f"{path}.guidance")
        if guidance.get("coachReview") is None:
            continue
        review = _require_dict(guidance["coachReview"], f"{path}.guidance.coachReview")
        if review.get("requiresReview") is not None and not isinstance(review["requiresReview"], bool):
            raise _invalid(f"{path}.guidance.coachReview.requiresReview must be a boolean.")
        _optional_str(review, "coachNotes", f"{path}.guidance.coachReview")
        _optional_str(review, "reviewedAt", f"{path}.guidance.coachReview")


def _validate_confirmations(payload: Dict[str, Any]) -> None:
    confirmations = payload.get("structuredMetadataConfirmations")
    if confirmations is None:
        return
    if not isinstance(confirmations, list):
        raise _invalid("structuredMetadataConfirmations must be an array.")
    for index, item in enumerate(confirmations):
        path = f"structuredMetadataConfirmations[{index}]"
        record = _require_dict(item, path)
        if record.get("field") not in CONFIRMABLE_FIELDS:
            raise _invalid(f"{path}.field must be one of position, technique, outcome, problem, cue.")
        if record.get("status") not in CONFIRMATION_STATUSES:
            raise _invalid(f"{path}.status must be confirmed, corrected, or rejected.")
        _optional_str(record, "correctionValue", path)
        _optional_str(record, "note", path)
        if record["status"] == "corrected" and not isinstance(record.get("correctionValue"), str):
            raise _invalid(f"{path}.correctionValue is required when status is corrected.")


def _validate_templates_and_packs(payload: Dict[str, Any]) -> None:
    template_id = payload.get("templateId")
    if template_id is not None and template_id not in TEMPLATE_IDS:
        raise _invalid("templateId must be one of class-notes, open-mat-rounds, drill-session.")
    draft = payload.get("actionPackDraft")
    if draft is not None and not is_action_pack_like(draft):
        raise _invalid("actionPackDraft must be an action pack.")
    final = payload.get("actionPackFinal")
    if final is not None and not (
        isinstance(final, dict)
        and isinstance(final.get("finalizedAt"), str)
        and is_action_pack_like(final.get("actionPack"))
    ):
        raise _invalid("actionPackFinal must include an action pack and finalizedAt.")


def validate_entry_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a decoded entry body and return it with session reviews normalized."""
    _validate_quick_add(payload)
    _validate_tags(payload)
    _validate_structured(payload)
    _validate_sections_and_metrics(payload)
    _validate_session_context(payload)
    _validate_partner_outcomes(payload)

    mentions = payload.get("rawTechniqueMentions")
    if mentions is not None and not _is_str_list(mentions):
        raise _invalid("rawTechniqueMentions must be an array of strings.")
    if not is_valid_media_attachments_input(payload.get("mediaAttachments")):
        raise _invalid("mediaAttachments must be an array of objects.")

    _validate_confirmations(payload)
    _validate_templates_and_packs(payload)

    out = dict(payload)
    if payload.get("sessionReviewDraft") is not None:
        draft = normalize_session_review_artifact(payload["sessionReviewDraft"])
        if not draft:
            raise _invalid("sessionReviewDraft must include promptSet arrays and a single concise oneThing cue.")
        out["sessionReviewDraft"] = draft
    if payload.get("sessionReviewFinal") is not None:
        final = normalize_finalized_session_review(payload["sessionReviewFinal"])
        if not final:
            raise _invalid(
                "sessionReviewFinal must include review promptSet arrays, a valid oneThing cue, and finalizedAt."
            )
        out["sessionReviewFinal"] = final
    return out


def parse_entry_payload(event: Dict[str, Any]) -> Dict[str, Any]:
    return validate_entry_payload(_require_json_object(event))
