import ast
import sys
import threading
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, Set

import pytest

_ROOT_DIR = Path(__file__).absolute().parent.parent
_PACKAGE_DIR = (_ROOT_DIR / "rootenc").absolute()

_EXECUTED_LINES: Dict[Path, Set[int]] = defaultdict(set)
_CANDIDATE_LINES: Dict[Path, Set[int]] = {}
_PREVIOUS_TRACE = None
_PREVIOUS_THREAD_TRACE = None
_TRACE_ACTIVE = False


def _iter_python_files(directory: Path) -> Iterable[Path]:
    for path in directory.rglob("*.py"):
        if path.is_file():
            yield path.absolute()


def _candidate_lines_for(path: Path) -> Set[int]:
    source = path.read_text(encoding="utf-8")
    try:
        tree = ast.parse(source, filename=str(path))
    except SyntaxError:
        return set()

    lines: Set[int] = set()
    source_lines = source.splitlines()
    for node in ast.walk(tree):
        if not isinstance(node, ast.stmt):
            continue
        # docstrings are never "executed" as lines
        if isinstance(node, ast.Expr) and isinstance(getattr(node, "value", None), ast.Constant):
            continue
        lineno = node.lineno
        if lineno <= len(source_lines) and not source_lines[lineno - 1].strip().startswith("#"):
            lines.add(lineno)
    return lines


for file_path in _iter_python_files(_PACKAGE_DIR):
    _CANDIDATE_LINES[file_path] = _candidate_lines_for(file_path)


def _trace(frame, event, arg):
    if event != "line":
        return _trace
    resolved = Path(frame.f_code.co_filename)
    if resolved in _CANDIDATE_LINES:
        _EXECUTED_LINES[resolved].add(frame.f_lineno)
    return _trace


@pytest.fixture(autouse=True)
def _isolated_log(tmp_path, monkeypatch):
    """Keep every test's JSONL trace out of the real log directories."""

    from rootenc import executil

    log_dir = tmp_path / "_logs"
    monkeypatch.setattr(executil, "LOG_DIRS", [str(log_dir)])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    monkeypatch.setattr(executil, "LOG_LEVEL", "TRACE")
    return log_dir


def pytest_sessionstart(session):
    global _PREVIOUS_TRACE, _PREVIOUS_THREAD_TRACE, _TRACE_ACTIVE
    if _TRACE_ACTIVE:
        return
    _TRACE_ACTIVE = True
    _EXECUTED_LINES.clear()
    _PREVIOUS_TRACE = sys.gettrace()
    _PREVIOUS_THREAD_TRACE = threading.gettrace()
    sys.settrace(_trace)
    threading.settrace(_trace)


def pytest_sessionfinish(session, exitstatus):
    global _TRACE_ACTIVE
    if not _TRACE_ACTIVE:
        return
    _TRACE_ACTIVE = False
    sys.settrace(_PREVIOUS_TRACE)
    threading.settrace(_PREVIOUS_THREAD_TRACE)
    _report_coverage(session)


def _report_coverage(session) -> None:
    terminal = session.config.pluginmanager.get_plugin("terminalreporter")
    write_line = terminal.write_line if terminal else print

    rows = []
    total, hit = 0, 0
    for path in sorted(_CANDIDATE_LINES):
        candidates = _CANDIDATE_LINES[path]
        if not candidates:
            continue
        covered = _EXECUTED_LINES.get(path, set()) & candidates
        missing = sorted(candidates - covered)
        total += len(candidates)
        hit += len(covered)
        rows.append((path.relative_to(_ROOT_DIR), len(candidates), missing))

    if not rows:
        return

    header = f"{'Name':<40} {'Stmts':>6} {'Miss':>6} {'Cover':>7}"
    write_line("")
    write_line("Coverage summary for 'rootenc':")
    write_line(header)
    write_line("-" * len(header))
    for name, statements, missing in rows:
        pct = (statements - len(missing)) / statements * 100.0
        write_line(f"{str(name):<40} {statements:>6} {len(missing):>6} {pct:>6.1f}%")
        if missing:
            preview = ", ".join(map(str, missing[:10]))
            write_line(f"    Missing: {preview}{'...' if len(missing) > 10 else ''}")
    write_line("-" * len(header))
    write_line(f"{'TOTAL':<40} {total:>6} {total - hit:>6} {hit / total * 100.0:>6.1f}%")
