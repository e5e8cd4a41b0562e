from __future__ import annotations

"""Lookup tables and scalar normalizers shared by the taxon and occurrence mappers."""

import math
import re
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional


BRAZIL = "Brasil"

STATE_NAMES: Mapping[str, str] = MappingProxyType(
    {
        "ac": "Acre",
        "ap": "Amapá",
        "am": "Amazonas",
        "pa": "Pará",
        "ro": "Rondônia",
        "rr": "Roraima",
        "to": "Tocantins",
        "al": "Alagoas",
        "ba": "Bahia",
        "ce": "Ceará",
        "ma": "Maranhão",
        "pb": "Paraíba",
        "pe": "Pernambuco",
        "pi": "Piauí",
        "rn": "Rio Grande do Norte",
        "se": "Sergipe",
        "go": "Goiás",
        "mt": "Mato Grosso",
        "ms": "Mato Grosso do Sul",
        "df": "Distrito Federal",
        "es": "Espírito Santo",
        "mg": "Minas Gerais",
        "rj": "Rio de Janeiro",
        "sp": "São Paulo",
        "pr": "Paraná",
        "rs": "Rio Grande do Sul",
        "sc": "Santa Catarina",
        "acre": "Acre",
        "amapá": "Amapá",
        "amapa": "Amapá",
        "amazonas": "Amazonas",
        "pará": "Pará",
        "para": "Pará",
        "rondônia": "Rondônia",
        "rondonia": "Rondônia",
        "roraima": "Roraima",
        "tocantins": "Tocantins",
        "alagoas": "Alagoas",
        "bahia": "Bahia",
        "ceará": "Ceará",
        "ceara": "Ceará",
        "maranhão": "Maranhão",
        "maranhao": "Maranhão",
        "paraíba": "Paraíba",
        "paraiba": "Paraíba",
        "pernambuco": "Pernambuco",
        "piauí": "Piauí",
        "piaui": "Piauí",
        "rio grande do norte": "Rio Grande do Norte",
        "sergipe": "Sergipe",
        "goiás": "Goiás",
        "goias": "Goiás",
        "mato grosso": "Mato Grosso",
        "mato grosso do sul": "Mato Grosso do Sul",
        "distrito federal": "Distrito Federal",
        "espírito santo": "Espírito Santo",
        "espirito santo": "Espírito Santo",
        "minas gerais": "Minas Gerais",
        "rio de janeiro": "Rio de Janeiro",
        "são paulo": "São Paulo",
        "sao paulo": "São Paulo",
        "paraná": "Paraná",
        "parana": "Paraná",
        "rio grande do sul": "Rio Grande do Sul",
        "santa catarina": "Santa Catarina",
    }
)

COUNTRY_NAMES: Mapping[str, str] = MappingProxyType({"brasil": BRAZIL, "brazil": BRAZIL})

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")
_WHITESPACE = re.compile(r"\s+")


def clean_str(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    return text or None


def flat_name(value: str) -> str:
    return _NON_ALNUM.sub("", value).lower()


def join_name_parts(parts: Iterable[Any]) -> Optional[str]:
    cleaned = [p for p in (clean_str(part) for part in parts) if p]
    return " ".join(cleaned) if cleaned else None


def to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def to_int(value: Any, *, low: int, high: Optional[int] = None) -> Optional[int]:
    number = to_number(value)
    if number is None or not number.is_integer():
        return None
    result = int(number)
    if result < low or (high is not None and result > high):
        return None
    return result


def country_name(value: Any) -> Optional[str]:
    text = clean_str(value)
    return COUNTRY_NAMES.get(text.lower()) if text else None


def state_name(value: Any) -> Optional[str]:
    text = clean_str(value)
    return STATE_NAMES.get(_WHITESPACE.sub(" ", text.lower())) if text else None


def county_name(value: Any) -> Optional[str]:
    text = clean_str(value)
    if not text:
        return None
    return " ".join(fragment[:1].upper() + fragment[1:] for fragment in text.lower().split())


def split_list(value: Any, separators: str = ";") -> list[str]:
    if not isinstance(value, str):
        return []
    pattern = "[" + re.escape(separators) + "]+"
    return [item.strip() for item in re.split(pattern, value) if item.strip()]
