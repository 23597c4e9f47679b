"""
Normalisation des valeurs et mesure des contradictions.

L'égalité est "adaptée à la catégorie":
- numérique (currency/percentage/number) : tolérance relative
- texte : casse et espaces normalisés
- structures imbriquées : comparaison récursive des formes normalisées
"""

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Optional

from factledger.facts.fact_keys import ValueKind, get_fact_key_definition
from factledger.facts.schemas import ContradictionSignificance, FactSource

_WHITESPACE = re.compile(r"\s+")
_NON_NUMERIC = re.compile(r"[^0-9.\-]")

DISPLAY_VALUE_MAX_LENGTH = 500


@dataclass(frozen=True)
class Contradiction:
    fact_key: str
    new_value: Any
    existing_value: Any
    new_source: FactSource
    existing_source: FactSource
    significance: ContradictionSignificance
    delta_percent: Optional[float] = None


def extract_numeric(value: Any) -> Optional[float]:
    """
    Extrait un nombre d'une valeur ("500,000 EUR", {"amount": 5e5}, 500000).

    Returns:
        Valeur numérique ou None si non extractible
    """
    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None

    if isinstance(value, str):
        cleaned = _NON_NUMERIC.sub("", value)
        if not cleaned or cleaned in {"-", ".", "-."}:
            return None
        try:
            return float(cleaned)
        except ValueError:
            return None

    if isinstance(value, dict):
        if "amount" in value:
            return extract_numeric(value["amount"])
        if "value" in value:
            return extract_numeric(value["value"])

    return None


def normalize_text(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip().casefold()


def normalize_value(value: Any) -> Any:
    """Forme canonique comparable (texte normalisé, nombres en float)."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return normalize_text(value)
    if isinstance(value, (list, tuple)):
        return [normalize_value(item) for item in value]
    if isinstance(value, dict):
        return {normalize_text(str(k)): normalize_value(v) for k, v in sorted(value.items())}
    return value


def _numbers_close(a: float, b: float, tolerance: float) -> bool:
    if a == b:
        return True
    return abs(a - b) <= tolerance * max(abs(a), abs(b))


def _structures_equivalent(a: Any, b: Any, tolerance: float) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if isinstance(a, float) and isinstance(b, float):
        return _numbers_close(a, b, tolerance)
    if isinstance(a, list) and isinstance(b, list):
        return len(a) == len(b) and all(
            _structures_equivalent(x, y, tolerance) for x, y in zip(a, b)
        )
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(
            _structures_equivalent(a[k], b[k], tolerance) for k in a
        )
    return a == b


def values_equivalent(fact_key: str, new_value: Any, existing_value: Any, tolerance: float) -> bool:
    """
    Deux valeurs désignent-elles la même chose pour cette fact_key ?

    Args:
        fact_key: Clé (détermine la nature de la valeur)
        new_value: Valeur candidate
        existing_value: Valeur courante
        tolerance: Tolérance relative pour les nombres
    """
    definition = get_fact_key_definition(fact_key)

    if definition and definition.is_numeric:
        new_number = extract_numeric(new_value)
        existing_number = extract_numeric(existing_value)
        if new_number is not None and existing_number is not None:
            return _numbers_close(new_number, existing_number, tolerance)

    if definition and definition.kind == ValueKind.ARRAY:
        # Listes comparées sans tenir compte de l'ordre
        if isinstance(new_value, list) and isinstance(existing_value, list):
            new_norm = sorted(json.dumps(normalize_value(v), sort_keys=True) for v in new_value)
            existing_norm = sorted(json.dumps(normalize_value(v), sort_keys=True) for v in existing_value)
            return new_norm == existing_norm

    return _structures_equivalent(normalize_value(new_value), normalize_value(existing_value), tolerance)


def relative_delta(new_value: float, existing_value: float) -> float:
    """Delta relatif à la valeur existante (1.0 si l'existant vaut 0)."""
    if new_value == existing_value:
        return 0.0
    if existing_value == 0:
        return 1.0
    return abs(new_value - existing_value) / abs(existing_value)


def measure_contradiction(
    fact_key: str,
    new_value: Any,
    new_source: FactSource,
    existing_value: Any,
    existing_source: FactSource,
    minor_threshold: float = 0.05,
    significant_threshold: float = 0.15,
    major_threshold: float = 0.30,
) -> Optional[Contradiction]:
    """
    Mesure la contradiction entre une valeur candidate et la valeur courante.

    Returns:
        Contradiction, ou None si les valeurs sont effectivement identiques
        (delta numérique sous le seuil MINOR)
    """
    definition = get_fact_key_definition(fact_key)
    new_number = extract_numeric(new_value)
    existing_number = extract_numeric(existing_value)

    numeric = (
        new_number is not None
        and existing_number is not None
        and (definition is None or definition.is_numeric)
    )

    if not numeric:
        if normalize_value(new_value) == normalize_value(existing_value):
            return None
        return Contradiction(
            fact_key=fact_key,
            new_value=new_value,
            existing_value=existing_value,
            new_source=new_source,
            existing_source=existing_source,
            significance=ContradictionSignificance.MINOR,
        )

    delta = relative_delta(new_number, existing_number)
    if delta < minor_threshold:
        return None

    if delta >= major_threshold:
        significance = ContradictionSignificance.MAJOR
    elif delta >= significant_threshold:
        significance = ContradictionSignificance.SIGNIFICANT
    else:
        significance = ContradictionSignificance.MINOR

    return Contradiction(
        fact_key=fact_key,
        new_value=new_value,
        existing_value=existing_value,
        new_source=new_source,
        existing_source=existing_source,
        significance=significance,
        delta_percent=round(delta, 4),
    )


def format_value(value: Any) -> str:
    """Rendu lisible d'une valeur pour display_value et les messages."""
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, int):
        return f"{value:,}"
    if isinstance(value, float):
        if value.is_integer():
            return f"{int(value):,}"
        return f"{value:,.2f}"
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def display_for(value: Any, display_value: Optional[str] = None, unit: Optional[str] = None) -> str:
    """display_value fourni, sinon dérivé de la valeur (et de l'unité)."""
    if display_value and display_value.strip():
        return display_value.strip()
    rendered = format_value(value)
    rendered = f"{rendered} {unit}" if unit else rendered
    return rendered[:DISPLAY_VALUE_MAX_LENGTH]


def format_contradiction_reason(contradiction: Contradiction) -> str:
    delta = ""
    if contradiction.delta_percent is not None:
        delta = f" ({contradiction.delta_percent * 100:.1f}% difference)"

    return (
        f"{contradiction.significance.value} contradiction on \"{contradiction.fact_key}\": "
        f"{format_value(contradiction.existing_value)} ({contradiction.existing_source.value}) vs "
        f"{format_value(contradiction.new_value)} ({contradiction.new_source.value}){delta}"
    )
