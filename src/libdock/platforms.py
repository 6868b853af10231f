#!/usr/bin/env python3
"""
libdock - Tabla de plataformas
==============================
Tabla estática clave -> nombre de variante de build. El resto de libdock
la usa solo como consulta opaca al validar las plataformas declaradas
por un proyecto.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class PlatformOption:
    """Una entrada de la tabla"""
    key: str
    value: str
    asan: Optional[str] = None
    hwasan: Optional[str] = None

    def values(self) -> List[str]:
        return [v for v in (self.value, self.asan, self.hwasan) if v]


PLATFORM_OPTIONS: List[PlatformOption] = [
    PlatformOption('mac', 'macOS', asan='macOS-asan'),
    PlatformOption('win', 'Win'),
    PlatformOption('ios', 'iOS', asan='iOS-asan'),
    PlatformOption('android', 'android', asan='android-asan', hwasan='android-hwasan'),
    PlatformOption('linux', 'ubuntu'),
    PlatformOption('wasm', 'wasm'),
    PlatformOption('ohos', 'ohos'),
]

_BY_KEY: Dict[str, PlatformOption] = {p.key: p for p in PLATFORM_OPTIONS}
_BY_VALUE: Dict[str, PlatformOption] = {v: p for p in PLATFORM_OPTIONS for v in p.values()}


def key_to_value(key: str) -> Optional[str]:
    """``mac`` -> ``macOS``; también acepta ``mac-asan`` / ``android-hwasan``"""
    base, _, variant = key.partition('-')
    option = _BY_KEY.get(base)
    if option is None:
        return None
    if not variant:
        return option.value
    return getattr(option, variant, None) if variant in ('asan', 'hwasan') else None


def value_to_key(value: str) -> Optional[str]:
    option = _BY_VALUE.get(value)
    return option.key if option else None


def all_keys() -> List[str]:
    return [p.key for p in PLATFORM_OPTIONS]


def normalize_platforms(names: List[str]) -> List[str]:
    """
    Convierte una lista de claves o valores a valores de variante.

    Raises:
        ValueError: Si alguna plataforma no existe en la tabla
    """
    result = []
    unknown = []
    for name in names:
        value = name if name in _BY_VALUE else key_to_value(name)
        if value is None:
            unknown.append(name)
        elif value not in result:
            result.append(value)
    if unknown:
        raise ValueError(
            f"Plataformas desconocidas: {', '.join(unknown)} "
            f"(disponibles: {', '.join(all_keys())})"
        )
    return result
