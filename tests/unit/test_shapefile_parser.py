import io
import zipfile

import geopandas as gpd
import pytest
from shapely.geometry import shape

from cocoatrack.core.errors import ErrorCode, ParcelleError, ShapefileMissingRequiredError
from cocoatrack.models.import_file import ImportFileType
from cocoatrack.services.parsers.base import get_parser
from cocoatrack.services.parsers.shapefile_parser import ShapefileParser, json_scalar

RECORDS = [
    {"Nom_prod": "Jean Koffi", "village": "Zoukougbeu", "surface": 1.2},
    {"Nom_prod": "Awa Traoré", "village": "Gonaté", "surface": 0.8},
]


def _codes(issues):
    return [issue.code for issue in issues]


def test_registry_returns_shapefile_parser():
    assert isinstance(get_parser(ImportFileType.SHAPEFILE_ZIP), ShapefileParser)


def test_wgs84_shapefile_with_prj(shapefile_zip, square):
    content = shapefile_zip(RECORDS, [square(0), square(1)])

    result = ShapefileParser().parse(content)

    assert len(result.features) == 2
    assert result.has_projection_info is True
    assert result.warnings == []
    assert result.available_fields == ["Nom_prod", "village", "surface"]
    first = result.features[0]
    assert first.properties == {"Nom_prod": "Jean Koffi", "village": "Zoukougbeu", "surface": 1.2}
    assert first.geometry["type"] == "MultiPolygon"
    assert shape(first.geometry).equals(shape(square(0)))


def test_missing_prj_assumes_wgs84(shapefile_zip, square):
    content = shapefile_zip(RECORDS, [square(0), square(1)], crs=None)

    result = ShapefileParser().parse(content)

    assert len(result.features) == 2
    assert result.has_projection_info is False
    assert _codes(result.warnings) == [ErrorCode.MISSING_PRJ_ASSUMED_WGS84.value]


def test_projected_shapefile_is_reprojected_to_wgs84(tmp_path, square):
    utm = gpd.GeoDataFrame(RECORDS[:1], geometry=[shape(square(0))], crs="EPSG:4326").to_crs(epsg=32630)
    utm.to_file(tmp_path / "utm.shp", engine="fiona")
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for ext in (".shp", ".shx", ".dbf", ".prj"):
            archive.write(tmp_path / f"utm{ext}", arcname=f"utm{ext}")

    result = ShapefileParser().parse(buffer.getvalue())

    lng, lat = result.features[0].geometry["coordinates"][0][0][0]
    assert abs(lng) <= 180 and abs(lat) <= 90
    assert shape(result.features[0].geometry).distance(shape(square(0))) < 1e-6


@pytest.mark.parametrize("dropped", [(".dbf",), (".shx", ".dbf")])
def test_missing_required_components(shapefile_zip, square, dropped):
    content = shapefile_zip(RECORDS[:1], [square(0)], drop=dropped)

    with pytest.raises(ShapefileMissingRequiredError) as exc_info:
        ShapefileParser().parse(content)

    assert exc_info.value.details["missing"] == list(dropped)


def test_point_layer_is_unsupported(shapefile_zip):
    points = [{"type": "Point", "coordinates": [-6.45, 6.88]}, {"type": "Point", "coordinates": [-6.44, 6.88]}]
    content = shapefile_zip(RECORDS, points)

    result = ShapefileParser().parse(content)

    assert result.features == []
    assert _codes(result.errors) == [ErrorCode.UNSUPPORTED_GEOMETRY_TYPE.value] * 2
    assert [e.feature_index for e in result.errors] == [0, 1]


def test_not_a_zip():
    with pytest.raises(ParcelleError) as exc_info:
        ShapefileParser().parse(b"PK\x03\x04 not really")
    assert exc_info.value.error_code == ErrorCode.VALIDATION_ERROR


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, None),
        (float("nan"), None),
        ("  Zoukougbeu ", "Zoukougbeu"),
        (b"abc", "abc"),
        (3, 3),
    ],
)
def test_json_scalar(value, expected):
    assert json_scalar(value) == expected
