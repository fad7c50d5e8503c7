"""
Service: field_codec.py
Rôle:
- Mettre les sels et les éléments de corps au format hexadécimal attendu par `nargo`.
- Ramener un littéral `Field(...)` signé dans l'intervalle canonique [0, p).

Le module est pur (aucune I/O) : il est utilisé par le pont prouveur et par les routes
pour valider les sels avant tout appel externe.
"""
from __future__ import annotations

import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

# Premier du corps scalaire BN254 (corps natif de Noir).
BN254_SCALAR_FIELD_MODULUS = (
    21888242871839275222246405745257275088548364400416034343698204186575808495617
)

_HEX_RE = re.compile(r"^0x[0-9a-fA-F]*$")
_DECIMAL_RE = re.compile(r"^[+-]?\d+$")


def canonicalize_salt(value: Any) -> str:
    """
    Convertit en chaîne, retire les espaces et préfixe `0x` si besoin.
    Ne lève pas d'erreur sur des caractères non hexadécimaux (simple warning) :
    les appelants qui valident doivent vérifier `is_hex_string()` ensuite.
    """
    raw = value if isinstance(value, str) else str(value)
    salt = raw.strip()
    if not salt.startswith("0x"):
        salt = "0x" + salt
    if not is_hex_string(salt):
        logger.warning("Salt %r formatted to %r is not a hex string", raw, salt)
    return salt


def is_hex_string(value: str) -> bool:
    """True si `value` vaut `0x` suivi uniquement de chiffres hexadécimaux."""
    return bool(_HEX_RE.match(value or ""))


def reduce_field_literal(literal: str | int) -> str:
    """
    Réduit un entier signé (précision arbitraire) dans [0, p) et le rend en hex minuscule.

    >>> reduce_field_literal("-1") == hex(BN254_SCALAR_FIELD_MODULUS - 1)
    True
    """
    if isinstance(literal, int):
        value = literal
    else:
        text = literal.strip()
        if not _DECIMAL_RE.match(text):
            raise ValueError(f"not a decimal field literal: {literal!r}")
        value = int(text)

    if value < 0:
        value += BN254_SCALAR_FIELD_MODULUS
    if value >= BN254_SCALAR_FIELD_MODULUS or value < 0:
        value %= BN254_SCALAR_FIELD_MODULUS
    return hex(value)
