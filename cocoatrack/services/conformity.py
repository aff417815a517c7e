"""
Statut de conformité des parcelles importées

Deux sources possibles à l'application d'un import :
- un champ d'attribut mappé par l'utilisateur (valeur libre → statut)
- l'auto-détection, heuristique sur la présence de champs courants

Les listes de champs et le seuil de champs complémentaires viennent de la
configuration (CONFORMITY_*).
"""
from typing import Any, Optional

from cocoatrack.config import Settings, settings as default_settings
from cocoatrack.models.parcelle import ConformityStatus

CONFORMITY_SYNONYMS: dict[ConformityStatus, tuple[str, ...]] = {
    ConformityStatus.CONFORME: ("conforme", "ok", "valid", "valide", "oui", "yes", "1", "true"),
    ConformityStatus.NON_CONFORME: (
        "non_conforme", "non conforme", "invalid", "invalide", "non", "no", "0", "false",
    ),
    ConformityStatus.EN_COURS: ("en_cours", "en cours", "pending", "en attente", "verification"),
    ConformityStatus.INFORMATIONS_MANQUANTES: (
        "informations_manquantes", "informations manquantes", "missing", "manquant",
        "incomplet", "incomplete",
    ),
}


def _has_value(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def map_field_to_conformity_status(value: Any) -> Optional[ConformityStatus]:
    """'OUI' → conforme, 'en attente' → en_cours… ; None si la valeur n'est pas reconnue."""
    if value is None:
        return None
    normalized = str(value).strip().lower()
    for status, synonyms in CONFORMITY_SYNONYMS.items():
        if normalized in synonyms:
            return status
    return None


def detect_conformity_status(
    attributes: dict[str, Any],
    planteur_name_field: Optional[str] = None,
    area_ha: Optional[float] = None,
    config: Settings = default_settings,
) -> ConformityStatus:
    """
    - conforme : nom du planteur ET (village OU surface > 0) ET au moins
      CONFORMITY_MIN_EXTRA_FIELDS champs complémentaires renseignés
    - en_cours : nom du planteur OU surface > 0
    - informations_manquantes : sinon
    """
    if planteur_name_field:
        has_owner = _has_value(attributes.get(planteur_name_field))
    else:
        has_owner = any(_has_value(attributes.get(f)) for f in config.CONFORMITY_OWNER_FIELDS)

    has_village = any(_has_value(attributes.get(f)) for f in config.CONFORMITY_VILLAGE_FIELDS)
    has_area = area_ha is not None and area_ha > 0
    extra_count = sum(1 for f in config.CONFORMITY_EXTRA_FIELDS if _has_value(attributes.get(f)))

    if has_owner and (has_village or has_area) and extra_count >= config.CONFORMITY_MIN_EXTRA_FIELDS:
        return ConformityStatus.CONFORME
    if has_owner or has_area:
        return ConformityStatus.EN_COURS
    return ConformityStatus.INFORMATIONS_MANQUANTES
