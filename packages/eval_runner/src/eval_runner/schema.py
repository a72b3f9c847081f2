from __future__ import annotations

import copy
from typing import Any

from jsonschema import Draft202012Validator

_DEFS: dict[str, Any] = {
    "stringMap": {
        "type": "object",
        "additionalProperties": {"type": "string"},
    },
    "beforeAction": {
        "oneOf": [
            {
                "type": "object",
                "properties": {"command": {"type": "string", "minLength": 1}},
                "required": ["command"],
                "additionalProperties": False,
            },
            {
                "type": "object",
                "properties": {"copy": {"$ref": "#/$defs/stringMap"}},
                "required": ["copy"],
                "additionalProperties": False,
            },
            {
                "type": "object",
                "properties": {"files": {"$ref": "#/$defs/stringMap"}},
                "required": ["files"],
                "additionalProperties": False,
            },
        ]
    },
    "beforeActions": {"type": "array", "items": {"$ref": "#/$defs/beforeAction"}},
    "check": {
        "type": "object",
        "properties": {
            "name": {"type": "string", "minLength": 1},
            "commandSuccess": {
                "oneOf": [
                    {"type": "string", "minLength": 1},
                    {
                        "type": "object",
                        "properties": {
                            "command": {"type": "string", "minLength": 1},
                            "outputContains": {"type": "string"},
                        },
                        "required": ["command"],
                        "additionalProperties": False,
                    },
                ]
            },
            "fileExists": {
                "oneOf": [
                    {"type": "string", "minLength": 1},
                    {"type": "array", "items": {"type": "string", "minLength": 1}, "minItems": 1},
                ]
            },
        },
        "required": ["name"],
        "oneOf": [
            {"required": ["commandSuccess"], "not": {"required": ["fileExists"]}},
            {"required": ["fileExists"], "not": {"required": ["commandSuccess"]}},
        ],
        "additionalProperties": False,
    },
    "mcpServer": {
        "type": "object",
        "properties": {
            "command": {"type": "string"},
            "args": {"type": "array", "items": {"type": "string"}},
            "env": {"$ref": "#/$defs/stringMap"},
            "cwd": {"type": "string"},
            "url": {"type": "string"},
            "headers": {"$ref": "#/$defs/stringMap"},
            "transport": {"type": "string"},
        },
    },
    "variantAxis": {
        "type": "object",
        "properties": {
            "name": {"type": "string", "minLength": 1},
            "agent": {"type": "string"},
            "rules": {"type": "string"},
            "command": {"type": "string"},
            "preamble": {"type": "string"},
            "postamble": {"type": "string"},
            "mcpServers": {
                "type": "object",
                "additionalProperties": {"$ref": "#/$defs/mcpServer"},
            },
            "before": {"$ref": "#/$defs/beforeActions"},
        },
        "required": ["name"],
    },
    "positiveInt": {"type": "integer", "minimum": 1},
    "evalCase": {
        "type": "object",
        "properties": {
            "name": {"type": "string", "minLength": 1},
            "description": {"type": "string"},
            "prompt": {"type": "string"},
            "workspaceDir": {"type": "string"},
            "repetitions": {"$ref": "#/$defs/positiveInt"},
            "timeoutSeconds": {"type": "number", "exclusiveMinimum": 0},
            "before": {"$ref": "#/$defs/beforeActions"},
            "tests": {"type": "array", "items": {"$ref": "#/$defs/check"}},
        },
        "required": ["prompt"],
        "additionalProperties": False,
    },
}

SUITE_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "$defs": _DEFS,
    "type": "object",
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "description": {"type": "string"},
        "preamble": {"type": "string"},
        "postamble": {"type": "string"},
        "workspaceDir": {"type": "string"},
        "repetitions": {"$ref": "#/$defs/positiveInt"},
        "concurrency": {"$ref": "#/$defs/positiveInt"},
        "timeoutSeconds": {"type": "number", "exclusiveMinimum": 0},
        "before": {"$ref": "#/$defs/beforeActions"},
        "evals": {
            "type": "array",
            "items": {
                "allOf": [{"$ref": "#/$defs/evalCase"}],
                "required": ["name"],
            },
        },
        "environments": {"type": "array", "items": {"$ref": "#/$defs/variantAxis"}},
        "experiments": {"type": "array", "items": {"$ref": "#/$defs/variantAxis"}},
        "matrix": {"type": "array", "items": {"type": "object"}},
    },
    "additionalProperties": False,
}

EVAL_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "$defs": copy.deepcopy(_DEFS),
    "$ref": "#/$defs/evalCase",
}


def validate_document(document: Any, schema: dict[str, Any]) -> list[str]:
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(document), key=lambda e: str(e.path))
    formatted: list[str] = []
    for error in errors:
        path = "$"
        for part in error.path:
            path += f"[{part!r}]" if isinstance(part, int) else f".{part}"
        formatted.append(f"{path}: {error.message}")
    return formatted
