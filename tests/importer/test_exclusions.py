from __future__ import annotations

import io

import pytest

from ptrs_app.errors import ValidationError
from ptrs_app.importer.contracts import CanonicalRow
from ptrs_app.importer.pipeline import (
    GovernmentEntityPredicate,
    apply_exclusions,
    build_predicates,
    load_gov_entities,
    preview_exclusions,
    register_predicate,
)
from ptrs_app.importer.pipeline.exclusions import GOV_ENTITY_CODE, PREDICATE_REGISTRY
from ptrs_app.models import db
from ptrs_app.models.importer.schema import GovEntityRef

GOV_CSV = (
    "Entity ABN,Legal Name,Type\n"
    "51 824 753 556,Australian Taxation Office,Commonwealth\n"
    "12345678901,State Revenue Office,State\n"
    ",Missing ABN,State\n"
)


def _make_stream(contents: str) -> io.StringIO:
    stream = io.StringIO(contents)
    stream.seek(0)
    return stream


def _predicate() -> GovernmentEntityPredicate:
    return GovernmentEntityPredicate(
        {"51824753556": {"name": "Australian Taxation Office", "category": "Commonwealth"}}
    )


def test_government_entity_predicate_matches_on_abn_digits():
    predicate = _predicate()

    comment = predicate.evaluate(CanonicalRow(1, {"payee_entity_abn": "51 824 753 556"}))

    assert comment == "Government entity - Australian Taxation Office - Commonwealth"
    assert predicate.evaluate(CanonicalRow(2, {"payee_entity_abn": "99 999 999 999"})) is None
    assert predicate.evaluate(CanonicalRow(3)) is None


def test_apply_exclusions_marks_rows_and_counts_codes():
    rows = [
        CanonicalRow(1, {"payee_entity_abn": "51824753556"}),
        CanonicalRow(2, {"payee_entity_abn": "11111111111"}),
    ]

    stats = apply_exclusions(rows, [_predicate()])

    assert rows[0].exclude is True
    assert rows[0]["exclude_from_metrics"] is True
    assert rows[0]["exclude_set_by"] == f"predicate:{GOV_ENTITY_CODE}"
    assert rows[0].exclusion_codes == [GOV_ENTITY_CODE]
    assert rows[1].exclude is False
    assert stats.as_dict() == {"evaluated": 2, "excluded": 1, "alreadyExcluded": 0, "byCode": {GOV_ENTITY_CODE: 1}}


def test_rule_exclusion_comment_is_kept():
    row = CanonicalRow(1, {"payee_entity_abn": "51824753556"})
    row.mark_excluded("Intercompany payment")

    stats = apply_exclusions([row], [_predicate()])

    assert row["exclude_comment"] == "Intercompany payment"
    assert row.exclusion_codes == [GOV_ENTITY_CODE]
    assert stats.already_excluded == 1
    assert stats.excluded == 0


def test_preview_exclusions_does_not_modify_rows():
    row = CanonicalRow(5, {"payee_entity_abn": "51824753556", "payee_entity_name": "ATO"})

    preview = preview_exclusions([row], [_predicate()])

    assert row.exclude is False
    assert preview["matched"] == 1
    assert preview["samples"][0]["rowNo"] == 5
    assert preview["samples"][0]["codes"] == [GOV_ENTITY_CODE]


def test_build_predicates_uses_registry():
    class AlwaysExclude:
        code = "ALWAYS"

        def evaluate(self, row):
            return "Always excluded"

    register_predicate("always", lambda session: AlwaysExclude())
    try:
        predicates = build_predicates(db.session, ["always"])
        assert [predicate.code for predicate in predicates] == ["ALWAYS"]

        with pytest.raises(ValidationError):
            build_predicates(db.session, ["unknown"])
    finally:
        PREDICATE_REGISTRY.pop("always", None)


def test_load_gov_entities_upserts_and_replaces():
    result = load_gov_entities(db.session, _make_stream(GOV_CSV))
    db.session.commit()

    assert result == {"created": 2, "updated": 0, "skipped": 1}
    ato = GovEntityRef.query.filter_by(abn="51824753556").one()
    assert ato.name == "Australian Taxation Office"
    assert ato.category == "Commonwealth"

    result = load_gov_entities(db.session, _make_stream("abn,name\n51824753556,ATO\n"))
    db.session.commit()
    assert result == {"created": 0, "updated": 1, "skipped": 0}
    assert GovEntityRef.query.count() == 2

    result = load_gov_entities(db.session, _make_stream("abn,name\n98765432109,Other Agency\n"), replace=True)
    db.session.commit()
    assert result == {"created": 1, "updated": 0, "skipped": 0}
    assert [ref.abn for ref in GovEntityRef.query.all()] == ["98765432109"]

    predicate = GovernmentEntityPredicate.from_session(db.session)
    assert len(predicate) == 1


def test_load_gov_entities_requires_abn_column():
    with pytest.raises(ValidationError):
        load_gov_entities(db.session, _make_stream("name,category\nATO,Commonwealth\n"))


def test_fingerprint_tracks_reference_content():
    baseline = _predicate().fingerprint()

    renamed = GovernmentEntityPredicate({"51824753556": {"name": "ATO", "category": "Commonwealth"}})
    reordered = GovernmentEntityPredicate(
        {
            "11111111111": {"name": "Other Agency", "category": "State"},
            "51824753556": {"name": "Australian Taxation Office", "category": "Commonwealth"},
        }
    )
    same_rows = GovernmentEntityPredicate(
        {
            "51824753556": {"name": "Australian Taxation Office", "category": "Commonwealth"},
            "11111111111": {"name": "Other Agency", "category": "State"},
        }
    )

    assert len(baseline) == 64
    assert _predicate().fingerprint() == baseline
    assert renamed.fingerprint() != baseline
    assert reordered.fingerprint() == same_rows.fingerprint()
    assert GovernmentEntityPredicate({}).fingerprint() != baseline
