"""
Git lifecycle hook installation.

Each hook file is classified once per install call:

- ABSENT    no hook file yet; one is created
- MARKED    carries our marker; the recorded invocation line is compared
            and a differing line is reported, never overwritten
- UNMARKED  someone else's hook; it is backed up and our marker plus
            invocation line are appended, preserving its behavior
"""

from __future__ import annotations

import enum
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from .config import HOOK_COMMANDS, HOOK_MARKER, TOOL_NAME
from .errors import HookDivergent
from .utils import make_executable, timestamp

logger = logging.getLogger(__name__)

SHEBANG = "#!/usr/bin/env sh"


class HookState(enum.Enum):
    ABSENT = "absent"
    MARKED = "marked"
    UNMARKED = "unmarked"


class HookOutcome(enum.Enum):
    CREATED = "created"
    VERIFIED = "verified"
    DIVERGENT = "divergent"
    APPENDED = "appended"
    MISSING = "missing"


@dataclass(frozen=True)
class HookResult:
    name: str
    path: Path
    outcome: HookOutcome
    expected: str
    recorded: Optional[str] = None
    backup: Optional[Path] = None


def classify(path: Path) -> Tuple[HookState, Optional[str]]:
    """Return the state of a hook file and, if marked, its recorded line."""
    if not path.exists():
        return HookState.ABSENT, None

    lines = path.read_text(encoding="utf-8").splitlines()
    for idx, line in enumerate(lines):
        if line.strip() != HOOK_MARKER:
            continue
        recorded = next((l.strip() for l in lines[idx + 1 :] if l.strip()), "")
        return HookState.MARKED, recorded
    return HookState.UNMARKED, None


class HookInstaller:
    def __init__(self, hooks_dir: Path, repo_root: Path, tool: str = TOOL_NAME):
        self.hooks_dir = Path(hooks_dir)
        self.repo_root = Path(repo_root)
        self.tool = tool

    def workspace_expr(self) -> str:
        """
        Shell expression for the repository root as seen from a hook.

        Hooks inside the repository locate it relative to themselves, so
        moving the clone does not break them. Hooks outside it (a shared
        hooks directory) ask git.
        """

        hooks = Path(os.path.realpath(self.hooks_dir))
        root = Path(os.path.realpath(self.repo_root))
        try:
            hooks.relative_to(root)
        except ValueError:
            return '"$(git rev-parse --show-toplevel)"'
        rel = Path(os.path.relpath(root, hooks)).as_posix()
        return f'"$(dirname "$0")/{rel}"'

    def invocation_line(self, command: str) -> str:
        return f"{self.tool} --workspace {self.workspace_expr()} {command} --quiet"

    # ------------------------------------------------------------------
    # Installation
    # ------------------------------------------------------------------

    def install(self, name: str, command: str) -> HookResult:
        path = self.hooks_dir / name
        expected = self.invocation_line(command)
        state, recorded = classify(path)

        if state is HookState.ABSENT:
            self.hooks_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(f"{SHEBANG}\n{HOOK_MARKER}\n{expected}\n", encoding="utf-8")
            make_executable(path)
            logger.info("Created %s hook: %s", name, path)
            return HookResult(name, path, HookOutcome.CREATED, expected)

        if state is HookState.MARKED:
            make_executable(path)
            if recorded == expected:
                logger.debug("%s hook already up to date", name)
                return HookResult(name, path, HookOutcome.VERIFIED, expected, recorded)
            logger.warning(
                "%s hook at %s was modified (found '%s', expected '%s'); leaving it untouched",
                name,
                path,
                recorded,
                expected,
            )
            return HookResult(name, path, HookOutcome.DIVERGENT, expected, recorded)

        backup = path.with_name(f"{name}.backup-{timestamp()}")
        shutil.copy2(path, backup)

        content = path.read_text(encoding="utf-8")
        if content and not content.endswith("\n"):
            content += "\n"
        path.write_text(f"{content}\n{HOOK_MARKER}\n{expected}\n", encoding="utf-8")
        make_executable(path)
        logger.info("Appended to existing %s hook (backup: %s)", name, backup)
        return HookResult(name, path, HookOutcome.APPENDED, expected, backup=backup)

    def install_all(self) -> List[HookResult]:
        """Install every lifecycle hook; divergent ones are reported, not raised."""
        return [self.install(name, command) for name, command in HOOK_COMMANDS.items()]

    def check_all(self) -> List[HookResult]:
        """Report hook states without writing anything."""
        results = []
        for name, command in HOOK_COMMANDS.items():
            path = self.hooks_dir / name
            expected = self.invocation_line(command)
            state, recorded = classify(path)
            if state is not HookState.MARKED:
                outcome = HookOutcome.MISSING
            elif recorded == expected:
                outcome = HookOutcome.VERIFIED
            else:
                outcome = HookOutcome.DIVERGENT
            results.append(HookResult(name, path, outcome, expected, recorded))
        return results


def raise_for_divergent(results: List[HookResult]) -> None:
    divergent = [r for r in results if r.outcome is HookOutcome.DIVERGENT]
    if divergent:
        names = ", ".join(f"{r.name} ({r.path})" for r in divergent)
        raise HookDivergent(
            f"Hooks modified by hand, resolve manually: {names}",
            path=str(divergent[0].path),
        )
