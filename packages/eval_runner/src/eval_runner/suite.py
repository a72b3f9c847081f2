from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from eval_runner.actions import BeforeAction
from eval_runner.checks import Check
from eval_runner.pathing import slugify
from eval_runner.schema import EVAL_SCHEMA, SUITE_SCHEMA, validate_document

SUITE_FILENAME = "terca.yaml"
EVAL_FILENAME = "eval.terca.yaml"

_SKIP_DIRS = frozenset({"node_modules"})


class SuiteConfigError(ValueError):
    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.strip() if isinstance(code, str) and code.strip() else "invalid_suite"
        self.details = dict(details) if isinstance(details, dict) else {"reason": message}
        self.hint = (
            hint.strip()
            if isinstance(hint, str) and hint.strip()
            else f"Fix {SUITE_FILENAME} / {EVAL_FILENAME} and rerun `terca plan` to validate."
        )


@dataclass(frozen=True)
class EvalCase:
    name: str
    prompt: str
    description: str | None = None
    workspace_dir: str | None = None
    repetitions: int | None = None
    timeout_seconds: float | None = None
    before: tuple[BeforeAction, ...] = ()
    checks: tuple[Check, ...] = ()
    dir: Path | None = None


@dataclass(frozen=True)
class Suite:
    name: str
    root: Path
    description: str | None = None
    preamble: str | None = None
    postamble: str | None = None
    workspace_dir: str | None = None
    repetitions: int | None = None
    concurrency: int | None = None
    timeout_seconds: float | None = None
    before: tuple[BeforeAction, ...] = ()
    evals: tuple[EvalCase, ...] = ()
    environments: tuple[Mapping[str, Any], ...] = ()
    experiments: tuple[Mapping[str, Any], ...] = ()
    matrix: tuple[Mapping[str, Any], ...] = ()

    def eval_names(self) -> list[str]:
        return [e.name for e in self.evals]


def _load_yaml_mapping(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise SuiteConfigError(
            f"Failed to read {path}: {e}",
            code="suite_read_failed",
            details={"path": str(path), "error": str(e)},
        ) from e
    except yaml.YAMLError as e:
        raise SuiteConfigError(
            f"Failed to parse YAML in {path}: {e}",
            code="suite_yaml_parse_failed",
            details={"path": str(path), "error": str(e)},
            hint="Fix the YAML syntax in the referenced file.",
        ) from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise SuiteConfigError(
            f"Expected a YAML mapping in {path}, got {type(raw).__name__}.",
            code="suite_not_mapping",
            details={"path": str(path), "yaml_type": type(raw).__name__},
        )
    return raw


def _validate(data: dict[str, Any], *, schema: dict[str, Any], path: Path) -> None:
    errors = validate_document(data, schema)
    if errors:
        raise SuiteConfigError(
            f"Invalid configuration in {path}:\n" + "\n".join(errors),
            code="suite_schema_invalid",
            details={"path": str(path), "errors": errors},
        )


def _before_actions(raw: Any) -> tuple[BeforeAction, ...]:
    if not isinstance(raw, list):
        return ()
    return tuple(BeforeAction.from_raw(item) for item in raw)


def _eval_case(data: Mapping[str, Any], *, name: str, dir: Path | None) -> EvalCase:
    timeout = data.get("timeoutSeconds")
    return EvalCase(
        name=name,
        prompt=str(data.get("prompt") or ""),
        description=data.get("description"),
        workspace_dir=data.get("workspaceDir"),
        repetitions=data.get("repetitions"),
        timeout_seconds=float(timeout) if timeout is not None else None,
        before=_before_actions(data.get("before")),
        checks=tuple(Check.from_raw(item) for item in data.get("tests") or []),
        dir=dir,
    )


def _check_unique_names(kind: str, names: list[str], *, root: Path, hint: str) -> None:
    """Reject names that repeat or that share a run directory once slugified."""

    by_slug: dict[str, str] = {}
    for name in names:
        slug = slugify(name)
        other = by_slug.get(slug)
        if other is None:
            by_slug[slug] = name
            continue
        details = {"name": name, "root": str(root)}
        if other == name:
            raise SuiteConfigError(
                f"Duplicate {kind} name: {name}",
                code=f"duplicate_{kind}_name",
                details=details,
                hint=hint,
            )
        raise SuiteConfigError(
            f"{kind.capitalize()} names {other!r} and {name!r} both map to run directory name {slug!r}",
            code=f"{kind}_name_collision",
            details={**details, "conflicts_with": other, "slug": slug},
            hint=hint,
        )


def find_eval_configs(root: Path) -> list[Path]:
    """Find ``eval.terca.yaml`` files below ``root``, skipping hidden dirs and node_modules."""

    found: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if not d.startswith(".") and d not in _SKIP_DIRS
        )
        if EVAL_FILENAME in filenames:
            found.append(Path(dirpath) / EVAL_FILENAME)
    return found


def load_suite(root: Path) -> Suite:
    root = root.resolve()
    suite_path = root / SUITE_FILENAME
    data = _load_yaml_mapping(suite_path) if suite_path.exists() else {}
    _validate(data, schema=SUITE_SCHEMA, path=suite_path)

    evals: list[EvalCase] = [
        _eval_case(item, name=str(item["name"]), dir=None) for item in data.get("evals") or []
    ]
    for eval_path in find_eval_configs(root):
        eval_data = _load_yaml_mapping(eval_path)
        _validate(eval_data, schema=EVAL_SCHEMA, path=eval_path)
        eval_dir = eval_path.parent
        name = str(eval_data.get("name") or eval_dir.name)
        evals.append(_eval_case(eval_data, name=name, dir=eval_dir))

    _check_unique_names(
        "eval",
        [case.name for case in evals],
        root=root,
        hint="Give each eval a unique `name` (directory names are used when omitted).",
    )
    for kind in ("environment", "experiment"):
        _check_unique_names(
            kind,
            [str(item["name"]) for item in data.get(f"{kind}s") or []],
            root=root,
            hint=f"Give each entry under `{kind}s` a distinct `name`.",
        )

    timeout = data.get("timeoutSeconds")
    return Suite(
        name=str(data.get("name") or root.name),
        root=root,
        description=data.get("description"),
        preamble=data.get("preamble"),
        postamble=data.get("postamble"),
        workspace_dir=data.get("workspaceDir"),
        repetitions=data.get("repetitions"),
        concurrency=data.get("concurrency"),
        timeout_seconds=float(timeout) if timeout is not None else None,
        before=_before_actions(data.get("before")),
        evals=tuple(evals),
        environments=tuple(dict(e) for e in data.get("environments") or []),
        experiments=tuple(dict(e) for e in data.get("experiments") or []),
        matrix=tuple(dict(m) for m in data.get("matrix") or []),
    )
