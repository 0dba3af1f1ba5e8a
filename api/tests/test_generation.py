from datetime import date

from app.fields import DbMapping, FieldPlacement, normalize_template
from app.generation import (
    GenerationRequest,
    MappingContext,
    clean_text,
    compute_filled_data,
    format_date_au,
    is_truthy,
    resolve_db_value,
)

CONTEXT = MappingContext(
    participant={"first_name": "Ada", "last_name": "Lovelace", "date_of_birth": "1815-12-10",
                 "address": {"suburb": "Marylebone"}},
    workflow_request={"status": "Approved"},
    caller={"full_name": "Case Worker", "email": "cw@example.com"},
    today=date(2025, 1, 9),
)


def db(source, field):
    return DbMapping(source=source, field=field)


def test_format_date_au():
    assert format_date_au("2025-01-09") == "09/01/2025"
    assert format_date_au("2025-01-09T10:00:00Z") == "09/01/2025"
    assert format_date_au("9 January 2025") == "09/01/2025"
    assert format_date_au(date(2024, 2, 29)) == "29/02/2024"
    assert format_date_au("sometime") == "sometime"
    assert format_date_au(None) == ""


def test_clean_text_and_truthy():
    assert clean_text(None) == ""
    assert clean_text(True) == "Yes"
    assert clean_text(False) == "No"
    assert clean_text(3) == "3"
    assert clean_text(float("nan")) == ""
    assert clean_text("  x ") == "x"
    assert is_truthy("Checked")
    assert is_truthy(" y ")
    assert not is_truthy("off")
    assert not is_truthy(None)


def test_resolve_db_sources():
    assert resolve_db_value(db("Participant", "first_name"), CONTEXT) == "Ada"
    assert resolve_db_value(db("participant", "address.suburb"), CONTEXT) == "Marylebone"
    assert resolve_db_value(db("User", "email"), CONTEXT) == "cw@example.com"
    assert resolve_db_value(db("WorkflowRequest", "status"), CONTEXT) == "Approved"
    assert resolve_db_value(db("computed", "full_name"), CONTEXT) == "Ada Lovelace"
    assert resolve_db_value(db("computed", "dob_au"), CONTEXT) == "10/12/1815"
    assert resolve_db_value(db("computed", "today_au"), CONTEXT) == "09/01/2025"
    assert resolve_db_value(db("computed", "unknown"), CONTEXT) == ""
    assert resolve_db_value(db("Participant", "missing.path"), CONTEXT) == ""


def test_unknown_source_reads_participant_path():
    assert resolve_db_value(db("address", "suburb"), CONTEXT) == "Marylebone"


def test_compute_filled_data_merges_sources():
    template = normalize_template({
        "fields": [
            {"id": "fn", "type": "text", "map_key": "Participant.first_name", "editable_after_prefill": True},
            {"id": "ln", "type": "text", "map_key": "Participant.last_name"},
            {"id": "note", "type": "textarea", "mapping": {"mode": "manual", "manualKey": "note"}},
            {"id": "goal", "type": "text", "mapping": {"mode": "manual"}},
            {"id": "sig", "type": "signature", "mapping": {"mode": "signature"}},
        ],
    })
    request = GenerationRequest(
        instance_id=1,
        template_id=1,
        manual_values={
            "manual:fn": "Overridden",
            "manual:ln": "Ignored",
            "note": "Manual note",
            "manual:goal": "Find work",
            "stale_key": "left over from an older layout",
        },
        signature_ref=None,
    )
    filled = compute_filled_data(template, request, CONTEXT)
    assert filled == {"fn": "Overridden", "ln": "Lovelace", "note": "Manual note", "goal": "Find work"}


def test_compute_filled_data_blank_override_uses_db_value():
    template = normalize_template({
        "fields": [{"id": "fn", "type": "text", "map_key": "Participant.first_name", "editable_after_prefill": True}],
    })
    request = GenerationRequest(instance_id=1, template_id=1, manual_values={"manual:fn": "  "}, signature_ref=None)
    assert compute_filled_data(template, request, CONTEXT) == {"fn": "Ada"}


def test_compute_filled_data_skips_fields_without_id():
    template = normalize_template({"fields": [{"type": "text", "map_key": "__manual__"}]})
    request = GenerationRequest(instance_id=1, template_id=1, manual_values={}, signature_ref=None)
    assert compute_filled_data(template, request, CONTEXT) == {}
    assert FieldPlacement(mapping=db("User", "email")).id == ""
