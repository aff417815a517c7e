import io
import zipfile

import pytest
from shapely.geometry import GeometryCollection, LinearRing, Point, box

from cocoatrack.core.errors import ErrorCode, ParcelleError
from cocoatrack.models.import_file import ImportFileType
from cocoatrack.services.parsers.base import get_parser, polygonal_mapping
from cocoatrack.services.parsers.kml_parser import (
    KMLParser, KMZParser, _properties, extract_kml_from_kmz,
)

KML = """<?xml version="1.0" encoding="UTF-8"?>
<kml xmlns="http://www.opengis.net/kml/2.2">
  <Document>
    <name>Parcelles Daloa</name>
    <Folder>
      <name>Campagne 2023</name>
      <Placemark>
        <name>Parcelle Koffi</name>
        <description>Relevé GPS 2023</description>
        <Polygon>
          <outerBoundaryIs><LinearRing><coordinates>
            -6.45,6.88,210 -6.45,6.881,210 -6.449,6.881,210 -6.449,6.88,210 -6.45,6.88,210
          </coordinates></LinearRing></outerBoundaryIs>
        </Polygon>
      </Placemark>
      <Placemark>
        <name>Deux blocs</name>
        <MultiGeometry>
          <Polygon><outerBoundaryIs><LinearRing><coordinates>
            -6.44,6.88 -6.439,6.88 -6.439,6.881 -6.44,6.881 -6.44,6.88
          </coordinates></LinearRing></outerBoundaryIs></Polygon>
          <Polygon><outerBoundaryIs><LinearRing><coordinates>
            -6.43,6.88 -6.429,6.88 -6.429,6.881 -6.43,6.881 -6.43,6.88
          </coordinates></LinearRing></outerBoundaryIs></Polygon>
        </MultiGeometry>
      </Placemark>
      <Placemark>
        <name>Puits</name>
        <Point><coordinates>-6.45,6.88</coordinates></Point>
      </Placemark>
      <Placemark>
        <name>Vide</name>
      </Placemark>
    </Folder>
  </Document>
</kml>
""".encode("utf-8")


def _kmz(entries: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def test_registry_returns_kml_parsers():
    assert isinstance(get_parser(ImportFileType.KML), KMLParser)
    assert isinstance(get_parser(ImportFileType.KMZ), KMZParser)


def test_polygon_placemarks_inside_folders():
    result = KMLParser().parse(KML)

    assert [f.feature_index for f in result.features] == [0, 1]
    assert result.has_projection_info is False
    assert "name" in result.available_fields


def test_name_and_description_become_lowercase_properties():
    first, second = KMLParser().parse(KML).features

    assert first.properties["name"] == "Parcelle Koffi"
    assert first.properties["description"] == "Relevé GPS 2023"
    assert second.properties["name"] == "Deux blocs"
    assert "description" not in second.properties


def test_altitude_is_dropped_and_rings_are_ccw():
    geometry = KMLParser().parse(KML).features[0].geometry

    ring = geometry["coordinates"][0][0]
    assert all(len(position) == 2 for position in ring)
    # Anneau saisi dans le sens horaire
    assert LinearRing(ring).is_ccw


def test_multigeometry_becomes_multipolygon():
    geometry = KMLParser().parse(KML).features[1].geometry

    assert geometry["type"] == "MultiPolygon"
    assert len(geometry["coordinates"]) == 2


def test_point_placemark_is_unsupported_and_empty_one_is_not_a_feature():
    result = KMLParser().parse(KML)

    assert [(e.code, e.feature_index) for e in result.errors] == [(ErrorCode.UNSUPPORTED_GEOMETRY_TYPE.value, 2)]
    assert result.errors[0].details["type"] == "Point"
    assert "Vide" not in [f.properties.get("name") for f in result.features]


def test_not_a_kml_document_raises_validation_error():
    with pytest.raises(ParcelleError) as exc_info:
        KMLParser().parse(b"ceci n'est pas un document KML")
    assert exc_info.value.error_code == ErrorCode.VALIDATION_ERROR


def test_properties_drop_presentation_columns_and_blank_values():
    row = {
        "Name": "Parcelle Koffi",
        "description": "",
        "tessellate": -1,
        "visibility": -1,
        "altitudeMode": None,
        "Nom_prod": "Jean Koffi",
        "village": None,
    }

    assert _properties(row, list(row)) == {"name": "Parcelle Koffi", "Nom_prod": "Jean Koffi"}


def test_polygonal_mapping_keeps_polygons_of_a_collection():
    collection = GeometryCollection([box(0, 0, 1, 1), Point(5, 5), box(2, 2, 3, 3)])

    geometry = polygonal_mapping(collection)

    assert geometry["type"] == "MultiPolygon"
    assert len(geometry["coordinates"]) == 2
    assert polygonal_mapping(GeometryCollection([Point(0, 0)])) is None
    assert polygonal_mapping(Point(0, 0)) is None


def test_kmz_prefers_doc_kml_and_ignores_macos_metadata():
    content = _kmz({
        "__MACOSX/doc.kml": b"garbage",
        "layers/other.kml": b"<kml/>",
        "doc.kml": KML,
    })

    assert extract_kml_from_kmz(content) == KML
    assert len(KMZParser().parse(content).features) == 2


def test_kmz_without_kml_entry():
    with pytest.raises(ParcelleError) as exc_info:
        KMZParser().parse(_kmz({"images/photo.png": b"\x89PNG"}))
    assert exc_info.value.error_code == ErrorCode.VALIDATION_ERROR


def test_kmz_that_is_not_a_zip():
    with pytest.raises(ParcelleError) as exc_info:
        KMZParser().parse(b"PK\x03\x04 truncated")
    assert exc_info.value.error_code == ErrorCode.VALIDATION_ERROR
