"""
check_runner.py - Script-mode runner shared by the test modules.

Every test module defines plain `test_*` functions (collected by pytest)
and ends with:

    if __name__ == "__main__":
        run_checks(globals(), "Reconciler Tests")

so `python test_reconcile.py` prints one PASS/FAIL line per check.
"""

from __future__ import annotations

import sys
import traceback
from typing import Any, Callable


def _configure_output_symbols() -> tuple[str, str, str]:
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    except (OSError, ValueError):
        pass

    try:
        "✓✗═".encode(sys.stdout.encoding or "utf-8")
        return "✓", "✗", "═"
    except (LookupError, UnicodeEncodeError):
        return "[OK]", "[FAIL]", "="


PASS, FAIL, LINE = _configure_output_symbols()


def run_checks(namespace: dict[str, Any], title: str) -> None:
    """Run every `test_*` callable in definition order and exit non-zero on failure."""
    checks: list[tuple[str, Callable[[], None]]] = [
        (name, obj) for name, obj in namespace.items() if name.startswith("test_") and callable(obj)
    ]
    passed = 0
    failed = 0

    print(LINE * 50)
    print(f"  {title}")
    print(LINE * 50)

    for name, check in checks:
        label = name[len("test_"):].replace("_", " ")
        try:
            check()
        except AssertionError as exc:
            failed += 1
            print(f"    {FAIL} {label}" + (f": {exc}" if str(exc) else ""))
        except Exception as exc:
            failed += 1
            print(f"    {FAIL} {label}: {type(exc).__name__}: {exc}")
            traceback.print_exc()
        else:
            passed += 1
            print(f"    {PASS} {label}")

    print(f"\n{LINE * 50}")
    print(f"  Results: {passed}/{passed + failed} passed")
    if failed == 0:
        print(f"  {title}: COMPLETE {PASS}")
    else:
        print(f"  {title}: {failed} FAILED")
    print(f"{LINE * 50}")
    raise SystemExit(1 if failed else 0)
