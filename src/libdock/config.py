#!/usr/bin/env python3
"""
libdock - Configuración
=======================
Documento ``config.json`` del directorio de estado. Se valida con
jsonschema al cargar y antes de escribir; las escrituras son atómicas y
se hacen bajo el file lock del propio archivo.

Los cambios hechos dentro de una transacción registran antes el valor
previo (paso config_mutation) para poder restaurarlo.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass, asdict, fields
from typing import Any, Dict, List, Optional

from .errors import ConfigError, NotInitializedError
from .fs_utils import atomic_write_json, read_json
from .lock_manager import with_file_lock
from .paths import get_config_dir, get_config_path, resolve_path
from .schemas import validate_document
from .transaction import Step, Transaction

logger = logging.getLogger('LIBDOCK.Config')

CONFIG_VERSION = "1.0"

CLEAN_STRATEGIES = ("unreferenced", "unused", "manual")
LOG_LEVELS = ("debug", "info", "warning", "error")

# store_path solo cambia mediante migrate
EDITABLE_KEYS = ("clean_strategy", "unused_days", "log_level")


@dataclass
class Config:
    """Configuración persistida"""
    store_path: str
    version: str = CONFIG_VERSION
    initialized: Optional[str] = None
    clean_strategy: str = "unreferenced"
    unused_days: int = 30
    log_level: str = "warning"

    @property
    def store_root(self) -> str:
        return resolve_path(self.store_path)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def coerce_value(key: str, raw: str) -> Any:
    """
    Convierte un valor recibido como texto al tipo de la clave.

    Raises:
        ConfigError: Clave no editable o valor inválido
    """
    if key not in EDITABLE_KEYS:
        raise ConfigError(f"Clave no editable: {key} (editables: {', '.join(EDITABLE_KEYS)})")
    if key == "unused_days":
        try:
            value = int(raw)
        except ValueError:
            raise ConfigError(f"unused_days debe ser un entero: {raw}")
        if value < 1:
            raise ConfigError("unused_days debe ser >= 1")
        return value
    choices = CLEAN_STRATEGIES if key == "clean_strategy" else LOG_LEVELS
    if raw not in choices:
        raise ConfigError(f"Valor inválido para {key}: {raw} (opciones: {', '.join(choices)})")
    return raw


class ConfigManager:
    """Lectura y escritura de config.json"""

    def __init__(self, home: Optional[str] = None):
        self.home = home or get_config_dir()
        self.config_file = Path(get_config_path(self.home))

    def exists(self) -> bool:
        return self.config_file.exists()

    def _read(self) -> Dict[str, Any]:
        try:
            data = read_json(self.config_file)
        except ValueError as e:
            raise ConfigError(f"config.json ilegible: {e}")
        errors = validate_document(data, "config")
        if errors:
            raise ConfigError(f"config.json inválido: {'; '.join(errors)}")
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        errors = validate_document(data, "config")
        if errors:
            raise ConfigError(f"Configuración inválida: {'; '.join(errors)}")
        atomic_write_json(self.config_file, data)

    def load(self) -> Optional[Config]:
        """Config actual, o None si libdock no está inicializado"""
        if not self.exists():
            return None
        return Config.from_dict(self._read())

    def require(self) -> Config:
        """
        Raises:
            NotInitializedError: Si no existe config.json
        """
        config = self.load()
        if config is None:
            raise NotInitializedError()
        return config

    def save(self, config: Config) -> None:
        with_file_lock(self.config_file, lambda: self._write(config.to_dict()))
        logger.info(f"Configuración guardada en {self.config_file}")

    def get_value(self, key: str) -> Any:
        return self.require().to_dict().get(key)

    def list_values(self) -> List[tuple]:
        return sorted(self.require().to_dict().items())

    def set_value(self, key: str, value: Any, tx: Optional[Transaction] = None) -> Any:
        """
        Cambia una clave y devuelve el valor anterior.

        Con ``tx`` se registra un paso config_mutation con el valor previo
        antes de escribir.
        """
        def _update() -> Any:
            data = self._read() if self.exists() else None
            if data is None:
                raise NotInitializedError()
            existed = key in data
            previous = data.get(key)
            if tx is not None:
                tx.add_step(Step.config_mutation(str(self.config_file), key, previous, existed))
            data[key] = value
            self._write(data)
            return previous

        previous = with_file_lock(self.config_file, _update)
        logger.info(f"Config {key}: {previous!r} -> {value!r}")
        return previous


def default_store_path(home: Optional[str] = None) -> str:
    return os.path.join(home or get_config_dir(), "store")
