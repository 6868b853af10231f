#!/usr/bin/env python3
"""
libdock - JSON Schemas
======================
Schemas de los documentos persistidos (config, registry, marcador de
transacción) y del manifiesto de dependencias de un proyecto.

Validación con jsonschema (Draft7Validator).
"""

from typing import Any, Dict, List

from jsonschema import Draft7Validator

_DEPENDENCY = {
    "type": "object",
    "required": ["lib_name", "revision", "linked_path"],
    "properties": {
        "lib_name": {"type": "string", "minLength": 1},
        "revision": {"type": "string", "minLength": 1},
        "linked_path": {"type": "string", "minLength": 1},
    },
}

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["version", "store_path"],
    "properties": {
        "version": {"type": "string"},
        "initialized": {"type": ["string", "null"]},
        "store_path": {"type": "string", "minLength": 1},
        "clean_strategy": {"enum": ["unreferenced", "unused", "manual"]},
        "unused_days": {"type": "integer", "minimum": 1},
        "log_level": {"enum": ["debug", "info", "warning", "error"]},
    },
}

REGISTRY_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["version", "projects", "libraries"],
    "properties": {
        "version": {"type": "string"},
        "projects": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "required": ["path", "dependencies"],
                "properties": {
                    "path": {"type": "string"},
                    "last_linked": {"type": ["string", "null"]},
                    "platforms": {"type": "array", "items": {"type": "string"}},
                    "dependencies": {"type": "array", "items": _DEPENDENCY},
                },
            },
        },
        "libraries": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "required": ["lib_name", "revision", "path", "referenced_by"],
                "properties": {
                    "lib_name": {"type": "string"},
                    "revision": {"type": "string"},
                    "size": {"type": "integer", "minimum": 0},
                    "path": {"type": "string"},
                    "referenced_by": {"type": "array", "items": {"type": "string"}},
                    "created_at": {"type": ["string", "null"]},
                    "last_access": {"type": ["string", "null"]},
                    "unlinked_at": {"type": ["string", "null"]},
                },
            },
        },
    },
}

TRANSACTION_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["transaction_id", "phase", "steps"],
    "properties": {
        "transaction_id": {"type": "string"},
        "description": {"type": "string"},
        "phase": {"enum": ["pending", "committed", "rolled_back"]},
        "started_at": {"type": "string"},
        "pid": {"type": "integer"},
        "process_start_time": {"type": ["number", "null"]},
        "steps": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["kind", "target"],
                "properties": {
                    "kind": {"enum": [
                        "file_copy", "file_delete", "symlink_create",
                        "symlink_remove", "registry_mutation", "config_mutation",
                    ]},
                    "target": {"type": "string"},
                },
            },
        },
        "rollback_errors": {"type": "array", "items": {"type": "string"}},
    },
}

MANIFEST_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["dependencies"],
    "properties": {
        "platforms": {"type": "array", "items": {"type": "string"}},
        "dependencies": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "revision"],
                "properties": {
                    "name": {"type": "string", "pattern": "^[^/\\\\:]+$"},
                    "revision": {"type": "string", "pattern": "^[^/\\\\]+$"},
                    "path": {"type": "string", "minLength": 1},
                    "source": {"type": "string", "minLength": 1},
                },
            },
        },
    },
}

SCHEMAS = {
    "config": CONFIG_SCHEMA,
    "registry": REGISTRY_SCHEMA,
    "transaction": TRANSACTION_SCHEMA,
    "manifest": MANIFEST_SCHEMA,
}


def validate_document(data: Any, schema_type: str) -> List[str]:
    """
    Valida datos contra uno de los schemas.

    Args:
        data: Documento a validar
        schema_type: config, registry, transaction o manifest

    Returns:
        Lista de errores (vacía si es válido)
    """
    if schema_type not in SCHEMAS:
        raise ValueError(f"Schema desconocido: {schema_type}")

    validator = Draft7Validator(SCHEMAS[schema_type])
    errors = []
    for error in sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path]):
        error_path = " -> ".join(str(p) for p in error.absolute_path)
        errors.append(f"{error_path}: {error.message}" if error_path else error.message)
    return errors
