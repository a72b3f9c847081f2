from __future__ import annotations

import shutil
from collections.abc import Callable, Iterable
from pathlib import Path

from eval_runner.suite import EvalCase, Suite

BASE_DIRNAME = "_base"
WORKSPACE_DIRNAME = "workspace"

COPYTREE_ALWAYS_IGNORE: frozenset[str] = frozenset(
    {
        ".git",
        ".hg",
        ".svn",
        ".venv",
        "venv",
        "__pycache__",
        ".pytest_cache",
        ".mypy_cache",
        ".ruff_cache",
        ".tox",
        ".nox",
        "node_modules",
        ".idea",
        ".vscode",
    }
)

COPYTREE_ROOT_ONLY_IGNORE: frozenset[str] = frozenset({".terca"})


class WorkspaceError(ValueError):
    def __init__(self, message: str, *, details: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.code = "workspace_source_missing"
        self.details = details or {}


def _ignore_names_for_copytree(
    *, src_root: Path, exclude: Iterable[Path] = ()
) -> Callable[[str, list[str]], set[str]]:
    src_root_resolved = src_root.resolve()
    excluded = {p.resolve() for p in exclude}

    def _ignore(dir_path: str, names: list[str]) -> set[str]:
        ignored: set[str] = {name for name in names if name in COPYTREE_ALWAYS_IGNORE}
        dir_resolved = Path(dir_path).resolve()
        if dir_resolved == src_root_resolved:
            ignored.update(name for name in names if name in COPYTREE_ROOT_ONLY_IGNORE)
        if excluded:
            ignored.update(name for name in names if (dir_resolved / name) in excluded)
        return ignored

    return _ignore


def _copy_layer(src: Path, dest: Path, *, exclude: Iterable[Path] = ()) -> bool:
    if not src.is_dir():
        return False
    shutil.copytree(
        src,
        dest,
        dirs_exist_ok=True,
        ignore=_ignore_names_for_copytree(src_root=src, exclude=exclude),
    )
    return True


def workspace_source(suite: Suite, eval_case: EvalCase) -> Path | None:
    if eval_case.workspace_dir:
        base = eval_case.dir or suite.root
        return (base / eval_case.workspace_dir).resolve()
    if suite.workspace_dir:
        return (suite.root / suite.workspace_dir).resolve()
    return None


def build_workspace(
    run_dir: Path,
    *,
    suite: Suite,
    eval_case: EvalCase,
    exclude: Iterable[Path] = (),
) -> Path:
    """Assemble ``<run_dir>/workspace``.

    Layers, later ones overwriting earlier: configured workspace source, the
    project ``_base`` directory, then the eval's own ``_base`` directory.
    ``exclude`` lists directories (e.g. the runs dir) never copied from the source.
    """

    workspace = run_dir / WORKSPACE_DIRNAME
    workspace.mkdir(parents=True, exist_ok=True)

    source = workspace_source(suite, eval_case)
    if source is not None:
        if not source.is_dir():
            raise WorkspaceError(
                f"Workspace source directory does not exist: {source}",
                details={"path": str(source), "eval": eval_case.name},
            )
        # The run dir may live under the source tree (e.g. workspaceDir: ".").
        _copy_layer(source, workspace, exclude=[run_dir.parent.parent, *exclude])

    _copy_layer(suite.root / BASE_DIRNAME, workspace)
    if eval_case.dir is not None:
        _copy_layer(eval_case.dir / BASE_DIRNAME, workspace)
    return workspace
