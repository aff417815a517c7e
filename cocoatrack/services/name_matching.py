"""
Normalisation des noms de planteurs pour le rapprochement à l'import.

La même fonction est utilisée à l'écriture (colonne `planteurs.name_norm`) et
à la lecture (regroupement des features par nom) : deux saisies qui ne
diffèrent que par la casse, les accents ou les espaces désignent le même
planteur.
"""
import unicodedata
from typing import Optional


def normalize_name(name: Optional[str]) -> str:
    """
    "  Jean   KOFFI " → "jean koffi", "Kouassi Hélène" → "kouassi helene".
    None ou chaîne vide → "".
    """
    if not name:
        return ""
    decomposed = unicodedata.normalize("NFD", str(name))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.lower().split())


def chunked(values: list, size: int) -> list[list]:
    """Découpe une liste en lots (requêtes IN (...) bornées)."""
    if size <= 0:
        raise ValueError("size must be positive")
    return [values[i:i + size] for i in range(0, len(values), size)]
