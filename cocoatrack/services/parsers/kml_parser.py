"""
Parseurs KML / KMZ

Lecture GeoPandas (moteur Fiona) : une couche OGR par Document / Folder,
les Placemarks sont numérotés dans l'ordre des couches puis du document.
Le driver LIBKML est préféré quand GDAL le fournit (ExtendedData exposé en
colonnes), sinon le driver KML (name / description uniquement).
"""
import io
import logging
import shutil
import tempfile
import zipfile
from functools import lru_cache
from pathlib import Path
from typing import Any

import fiona
import geopandas as gpd
from fiona.errors import FionaError

from cocoatrack.core.errors import ErrorCode, validation_error
from cocoatrack.models.import_file import ImportFileType
from cocoatrack.services.parsers.base import (
    EMPTY_GEOMETRY, POLYGON_TYPES, GeoParser, GeoParseResult, RawFeature, json_scalar,
    polygonal_mapping, register, to_multipolygon,
)

logger = logging.getLogger(__name__)

# Colonnes de présentation ajoutées par LIBKML, sans valeur métier
KML_STYLE_COLUMNS = {
    "timestamp", "begin", "end", "altitudemode", "tessellate", "extrude",
    "visibility", "draworder", "icon", "snippet", "styleurl",
}
# Name / Description (KML) ou Name / description (LIBKML)
KML_RENAMED_COLUMNS = {"name": "name", "description": "description"}


@lru_cache()
def kml_driver() -> str:
    with fiona.Env() as env:
        drivers = env.drivers()
    driver = "LIBKML" if "LIBKML" in drivers else "KML"
    # Fiona n'active pas les drivers KML par défaut
    fiona.supported_drivers[driver] = "r"
    return driver


def _properties(row, columns: list[str]) -> dict[str, Any]:
    properties: dict[str, Any] = {}
    for column in columns:
        key = str(column)
        if key.lower() in KML_STYLE_COLUMNS:
            continue
        value = json_scalar(row[column])
        if value is None or value == "":
            continue
        properties[KML_RENAMED_COLUMNS.get(key.lower(), key)] = value
    return properties


def _read_layers(kml_path: Path) -> list[gpd.GeoDataFrame]:
    driver = kml_driver()
    try:
        layers = fiona.listlayers(str(kml_path))
        return [gpd.read_file(kml_path, driver=driver, layer=layer, engine="fiona") for layer in layers]
    except (FionaError, ValueError, OSError) as exc:
        raise validation_error("file", f"Format KML invalide : {exc}")


def parse_kml_document(content: bytes) -> GeoParseResult:
    tmp_dir = Path(tempfile.mkdtemp(prefix="cocoatrack_kml_"))
    try:
        kml_path = tmp_dir / "doc.kml"
        kml_path.write_bytes(content)
        frames = _read_layers(kml_path)
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)

    # Le KML n'embarque aucune définition de projection : des coordonnées hors
    # WGS84 y signalent un export mal configuré
    result = GeoParseResult(has_projection_info=False)

    index = 0
    for gdf in frames:
        if gdf.empty:
            continue
        geometry_column = gdf.geometry.name
        columns = [c for c in gdf.columns if c != geometry_column]
        for _, row in gdf.iterrows():
            geom = row[geometry_column]
            properties = _properties(row, columns)

            if geom is None or geom.is_empty:
                result.add_warning(EMPTY_GEOMETRY, f"Placemark {index} sans géométrie", index)
            else:
                geometry = polygonal_mapping(geom)
                if geometry is None:
                    result.add_error(
                        ErrorCode.UNSUPPORTED_GEOMETRY_TYPE,
                        f"Placemark {index} : type de géométrie non supporté ({geom.geom_type}). Seuls Polygon et MultiPolygon sont acceptés",
                        index,
                        type=geom.geom_type,
                        expected=list(POLYGON_TYPES),
                    )
                else:
                    result.features.append(
                        RawFeature(properties=properties, geometry=to_multipolygon(geometry), feature_index=index)
                    )
            index += 1

    logger.debug("KML lu : %d placemarks, %d couches", index, len(frames))
    result.collect_fields()
    return result


@register
class KMLParser(GeoParser):
    file_type = ImportFileType.KML

    def parse(self, content: bytes) -> GeoParseResult:
        return parse_kml_document(content)


def extract_kml_from_kmz(content: bytes) -> bytes:
    """Un KMZ est un zip contenant un document KML (doc.kml de préférence)."""
    try:
        archive = zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile:
        raise validation_error("file", "Archive KMZ illisible")
    with archive:
        kml_entries = [n for n in archive.namelist() if n.lower().endswith(".kml") and not n.startswith("__MACOSX/")]
        if not kml_entries:
            raise validation_error("file", "L'archive KMZ ne contient aucun fichier .kml")
        preferred = [n for n in kml_entries if n.rsplit("/", 1)[-1].lower() == "doc.kml"]
        return archive.read((preferred or kml_entries)[0])


@register
class KMZParser(GeoParser):
    file_type = ImportFileType.KMZ

    def parse(self, content: bytes) -> GeoParseResult:
        return parse_kml_document(extract_kml_from_kmz(content))
