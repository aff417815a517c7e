import uuid

from cocoatrack.core.errors import ErrorCode
from cocoatrack.services.feature_pipeline import (
    extract_label, is_applicable, mark_duplicates, process_features, sort_by_hash,
)
from cocoatrack.services.parsers.base import GeoParseResult, RawFeature, to_multipolygon


def _raw(geometry, index, **properties):
    return RawFeature(properties=properties, geometry=to_multipolygon(geometry) if geometry else geometry, feature_index=index)


def _polygon(ring):
    return {"type": "Polygon", "coordinates": [ring]}


BOWTIE = _polygon([[-6.45, 6.88], [-6.44, 6.89], [-6.44, 6.88], [-6.45, 6.89], [-6.45, 6.88]])
COLLINEAR = _polygon([[-6.45, 6.88], [-6.44, 6.88], [-6.43, 6.88], [-6.45, 6.88]])
PROJECTED = _polygon([[450, 91], [450.001, 91], [450.001, 91.001], [450, 91.001], [450, 91]])


def test_valid_feature_gets_measures_and_hash(square):
    parsed = GeoParseResult(features=[_raw(square(0), 0, name="Parcelle Koffi", village="Zoukougbeu")])

    result = process_features(parsed)

    (feature,) = result.features
    assert feature.feature_index == 0
    assert feature.label == "Parcelle Koffi"
    assert feature.dbf_attributes["village"] == "Zoukougbeu"
    assert feature.geom_original_valid is True
    assert feature.geom_fixed is None
    assert feature.area_ha > 1
    assert len(feature.feature_hash) == 64
    assert feature.validation.ok and feature.validation.warnings == []
    assert is_applicable(feature)
    assert result.hashes == [feature.feature_hash]


def test_repairable_polygon_is_kept_with_flag():
    result = process_features(GeoParseResult(features=[_raw(BOWTIE, 0)]))

    (feature,) = result.features
    assert feature.geom_original_valid is False
    assert feature.geom_fixed is not None
    assert feature.geom_geojson == feature.geom_fixed
    assert "Géométrie corrigée automatiquement" in feature.validation.warnings
    assert result.errors == []


def test_unrepairable_polygon_is_excluded_at_its_index(square):
    parsed = GeoParseResult(features=[_raw(square(0), 0), _raw(COLLINEAR, 1), _raw(square(2), 2)])

    result = process_features(parsed)

    assert sorted(f.feature_index for f in result.features) == [0, 2]
    assert [(e.code, e.feature_index) for e in result.errors] == [(ErrorCode.INVALID_GEOMETRY.value, 1)]


def test_empty_geometry_is_an_error():
    result = process_features(GeoParseResult(features=[_raw({"type": "MultiPolygon", "coordinates": []}, 4)]))

    assert result.features == []
    assert result.errors[0].code == ErrorCode.INVALID_GEOMETRY.value
    assert result.errors[0].details == {"reason": "géométrie vide", "feature_index": 4}
    assert result.errors[0].feature_index == 4
    assert result.errors[0].message.startswith("Feature 4")


def test_out_of_bounds_coordinates_are_advisory_without_projection_info(square):
    parsed = GeoParseResult(
        features=[_raw(square(0), 0), _raw(PROJECTED, 1), _raw(square(2), 2)],
        has_projection_info=False,
    )

    result = process_features(parsed)

    assert len(result.features) == 3
    flagged = next(f for f in result.features if f.feature_index == 1)
    assert flagged.validation.ok is True
    (warning,) = result.warnings
    assert warning.code == ErrorCode.LIKELY_PROJECTED_COORDINATES.value
    assert warning.feature_index == 1
    assert warning.requires_confirmation is True
    assert warning.details["sample_coord"] == [450, 91]


def test_no_projection_warning_when_projection_is_asserted():
    result = process_features(GeoParseResult(features=[_raw(PROJECTED, 0)], has_projection_info=True))
    assert result.warnings == []


def test_parser_issues_are_carried_over(square):
    parsed = GeoParseResult(features=[_raw(square(0), 0)])
    parsed.add_warning(ErrorCode.MISSING_PRJ_ASSUMED_WGS84, "Fichier .prj absent")
    parsed.add_error(ErrorCode.UNSUPPORTED_GEOMETRY_TYPE, "Point", 1, type="Point")

    result = process_features(parsed)

    assert [w.code for w in result.warnings] == [ErrorCode.MISSING_PRJ_ASSUMED_WGS84.value]
    assert [e.code for e in result.errors] == [ErrorCode.UNSUPPORTED_GEOMETRY_TYPE.value]


def test_mark_duplicates(square):
    result = process_features(GeoParseResult(features=[_raw(square(0), 0), _raw(square(1), 1)]))
    existing_id = uuid.uuid4()
    duplicate_hash = next(f.feature_hash for f in result.features if f.feature_index == 1)

    mark_duplicates(result, {duplicate_hash: existing_id})

    duplicate = next(f for f in result.features if f.feature_index == 1)
    assert duplicate.is_duplicate is True
    assert duplicate.existing_parcelle_id == existing_id
    assert not is_applicable(duplicate)
    (warning,) = result.warnings
    assert warning.code == ErrorCode.DUPLICATE_GEOMETRY.value
    assert warning.details["existing_parcelle_id"] == str(existing_id)


def test_sort_by_hash_is_deterministic(square):
    parsed = GeoParseResult(features=[_raw(square(i), i) for i in range(5)])
    first = process_features(parsed)
    second = process_features(parsed)
    sort_by_hash(first)
    sort_by_hash(second)

    assert [f.feature_hash for f in first.features] == sorted(first.hashes)
    assert [f.feature_index for f in first.features] == [f.feature_index for f in second.features]


def test_extract_label_priority():
    assert extract_label({"NOM": "B", "name": "A"}) == "A"
    assert extract_label({"name": "  ", "label": "Lot 4"}) == "Lot 4"
    assert extract_label({"village": "Gonaté"}) is None
