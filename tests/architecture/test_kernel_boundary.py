"""
Kernel Boundary & Invariants Contract.

Tests that enforce the architectural boundaries:

1. magistral_kernel/** may NOT import magistral_engines, magistral_services,
   magistral_config or magistral_modules.  The kernel never depends upward.

2. magistral_engines/** stays pure: no SQLAlchemy, no services, no modules,
   no configuration.  Engines receive plain values and return plain values.

3. Only the module services commit.  Kernel and services code flushes.

4. The kernel invariants declaration is complete and non-empty.

These tests read source code via AST -- they cannot break anything.
"""

import ast
import glob
from pathlib import Path

from magistral_kernel.invariants import (
    ALL_KERNEL_INVARIANTS,
    FORBIDDEN_KERNEL_IMPORTS,
    KernelInvariant,
)

ROOT = Path(__file__).resolve().parents[2]


def _python_files(package: str) -> list[str]:
    return sorted(glob.glob(str(ROOT / package / "**" / "*.py"), recursive=True))


def _extract_imports(filepath: str) -> list[tuple[int, str]]:
    """Extract (line_number, module_string) for all imports in a file."""
    try:
        tree = ast.parse(Path(filepath).read_text(), filename=filepath)
    except (SyntaxError, UnicodeDecodeError):
        return []

    results: list[tuple[int, str]] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                results.append((node.lineno, alias.name))
        elif isinstance(node, ast.ImportFrom):
            if node.module:
                results.append((node.lineno, node.module))
    return results


def _violations(package: str, forbidden: tuple[str, ...]) -> list[str]:
    found: list[str] = []
    for filepath in _python_files(package):
        for lineno, module in _extract_imports(filepath):
            for prefix in forbidden:
                if module == prefix or module.startswith(f"{prefix}."):
                    found.append(f"  {Path(filepath).relative_to(ROOT)}:{lineno} imports '{module}'")
    return found


def _commit_calls(package: str) -> list[str]:
    found: list[str] = []
    for filepath in _python_files(package):
        tree = ast.parse(Path(filepath).read_text(), filename=filepath)
        for node in ast.walk(tree):
            if (
                isinstance(node, ast.Call)
                and isinstance(node.func, ast.Attribute)
                and node.func.attr == "commit"
                and ast.unparse(node.func.value).endswith("session")
            ):
                found.append(f"  {Path(filepath).relative_to(ROOT)}:{node.lineno}")
    return found


class TestKernelNoUpwardDependencies:

    def test_packages_exist(self):
        assert _python_files("magistral_kernel")
        assert _python_files("magistral_engines")

    def test_kernel_does_not_import_forbidden_packages(self):
        violations = _violations("magistral_kernel", FORBIDDEN_KERNEL_IMPORTS)
        assert not violations, (
            "Kernel boundary violation -- magistral_kernel/** must not import "
            "upper layers:\n" + "\n".join(violations)
        )


class TestEnginePurity:

    FORBIDDEN = (
        "sqlalchemy",
        "magistral_services",
        "magistral_modules",
        "magistral_config",
        "magistral_kernel.db",
        "magistral_kernel.models",
        "magistral_kernel.services",
        "magistral_kernel.selectors",
    )

    def test_engines_do_not_touch_persistence(self):
        violations = _violations("magistral_engines", self.FORBIDDEN)
        assert not violations, (
            "Engine purity violation -- engines take and return plain values:\n"
            + "\n".join(violations)
        )


class TestTransactionOwnership:

    def test_kernel_never_commits(self):
        commits = [c for c in _commit_calls("magistral_kernel") if "db/engine.py" not in c]
        assert not commits, "Kernel code must flush, not commit:\n" + "\n".join(commits)

    def test_services_never_commit(self):
        commits = _commit_calls("magistral_services")
        assert not commits, "Services code must flush, not commit:\n" + "\n".join(commits)


class TestKernelInvariantsDeclaration:

    def test_invariants_non_empty(self):
        assert len(ALL_KERNEL_INVARIANTS) > 0

    def test_all_members_declared(self):
        assert ALL_KERNEL_INVARIANTS == frozenset(KernelInvariant)

    def test_values_are_unique_snake_case(self):
        values = [inv.value for inv in KernelInvariant]
        assert len(values) == len(set(values))
        assert all(v == v.lower() and " " not in v for v in values)
