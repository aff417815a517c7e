from cocoatrack.core.errors import (
    ErrorCode, ParcelleError, already_applied, duplicate_file, internal_error,
    invalid_geometry, limit_exceeded, not_found, shapefile_missing, validation_error,
)
from cocoatrack.schemas.imports import ParseIssue


def test_error_payload_shape():
    exc = validation_error("planteur_name_field", "Champ obligatoire")

    assert exc.to_dict() == {
        "error_code": "VALIDATION_ERROR",
        "message": "Champ obligatoire",
        "details": {"field": "planteur_name_field", "message": "Champ obligatoire"},
    }


def test_requires_confirmation_only_when_set():
    exc = ParcelleError(code=ErrorCode.LIKELY_PROJECTED_COORDINATES, requires_confirmation=True)

    payload = exc.to_dict()
    assert payload["error_code"] == "LIKELY_PROJECTED_COORDINATES"
    assert payload["requires_confirmation"] is True
    assert "requires_confirmation" not in not_found("ImportFile", "x").to_dict()


def test_default_message_per_code():
    assert ParcelleError(code=ErrorCode.DUPLICATE_GEOMETRY).message == "Une parcelle avec cette géométrie existe déjà"


def test_factories_carry_structured_details():
    assert shapefile_missing([".shx", ".dbf"]).details == {"missing": [".shx", ".dbf"]}
    assert limit_exceeded(500, 512, "features").details == {"limit": 500, "actual": 512, "resource": "features"}
    assert duplicate_file("abc").details == {"existing_import_id": "abc"}
    assert invalid_geometry("Self-intersection", feature_index=3).details == {
        "reason": "Self-intersection",
        "feature_index": 3,
    }
    assert already_applied("abc").error_code == ErrorCode.IMPORT_ALREADY_APPLIED
    assert not_found("ImportFile", "abc").details == {"resource_type": "ImportFile", "id": "abc"}


def test_internal_error_hides_reason():
    exc = internal_error("connexion perdue")

    assert exc.reason == "connexion perdue"
    assert "connexion perdue" not in str(exc.to_dict())


def test_parse_issue_from_error_keeps_feature_index():
    issue = ParseIssue.from_error(invalid_geometry("Self-intersection", feature_index=7))

    assert issue.code == "INVALID_GEOMETRY"
    assert issue.feature_index == 7
    assert issue.message == "Feature 7 : géométrie invalide (Self-intersection)"
    assert ParseIssue.from_error(shapefile_missing([".shx"])).feature_index is None
