# step_workflows/kyua.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import sqlalchemy as sa

# ---------------------------------------------------------------------
# Raw result store
# ---------------------------------------------------------------------
# kyua writes one SQLite database per test run:
#   <kyua_home>/store/results.<suite-id>.<YYYYMMDD-HHMMSS-uuuuuu>.db
# where <suite-id> is the absolute suite directory with "/" turned into "_".
# Timestamps in the store are microseconds since the epoch.
# ---------------------------------------------------------------------

PASSED = "passed"
SKIPPED = "skipped"
EXPECTED_FAILURE = "expected_failure"
BROKEN = "broken"
FAILED = "failed"

RESULT_TYPES = (PASSED, SKIPPED, EXPECTED_FAILURE, BROKEN, FAILED)
NON_PASSING = (EXPECTED_FAILURE, BROKEN, FAILED)

_REQUIRED_TABLES = {"test_programs", "test_cases", "test_results"}
_OUTPUT_TABLES = {"test_case_files", "files"}

_RESULTS_QUERY = sa.text(
    """
    SELECT tp.relative_path AS program,
           tc.name AS name,
           tc.test_case_id AS case_id,
           tr.result_type AS result,
           tr.result_reason AS reason,
           tr.start_time AS start_time,
           tr.end_time AS end_time
    FROM test_results tr
    JOIN test_cases tc ON tc.test_case_id = tr.test_case_id
    JOIN test_programs tp ON tp.test_program_id = tc.test_program_id
    ORDER BY tp.relative_path, tc.name
    """
)

_OUTPUTS_QUERY = sa.text(
    """
    SELECT tcf.test_case_id AS case_id, tcf.file_name AS file_name, f.contents AS contents
    FROM test_case_files tcf
    JOIN files f ON f.file_id = tcf.file_id
    """
)


@dataclass(frozen=True)
class TestResult:
    program: str
    case: str
    result: str
    reason: Optional[str] = None
    start_time: int = 0
    end_time: int = 0
    stdout: str = ""
    stderr: str = ""

    __test__ = False  # not a pytest class

    @property
    def id(self) -> str:
        return f"{self.program}:{self.case}"

    @property
    def duration(self) -> float:
        return max(0, self.end_time - self.start_time) / 1_000_000

    @property
    def passing(self) -> bool:
        return self.result not in NON_PASSING


@dataclass(frozen=True)
class StoreContents:
    results: List[TestResult] = field(default_factory=list)
    source: str = ""
    note: Optional[str] = None  # why the result set is empty, if it is


def suite_id(build_dir: str | Path) -> str:
    return str(Path(build_dir).resolve()).strip("/").replace("/", "_")


def _decode(blob) -> str:
    if blob is None:
        return ""
    if isinstance(blob, bytes):
        return blob.decode("utf-8", errors="replace")
    return str(blob)


@dataclass(frozen=True)
class KyuaStore:
    """Read-only view on one kyua run: its results database and log dir."""
    results_file: Optional[Path] = None
    logs_dir: Optional[Path] = None

    @classmethod
    def for_build_dir(cls, kyua_home: str | Path, build_dir: str | Path) -> "KyuaStore":
        home = Path(kyua_home)
        candidates = sorted((home / "store").glob(f"results.{suite_id(build_dir)}.*.db"))
        logs = home / "logs"
        return cls(
            results_file=candidates[-1] if candidates else None,
            logs_dir=logs if logs.is_dir() else None,
        )

    def load(self) -> StoreContents:
        """
        Load every recorded result, ordered by program then case.

        A missing database, missing tables, or a truncated file (harness
        died mid-run) all yield an empty result set with an explanatory note.
        """
        if self.results_file is None or not self.results_file.is_file():
            return StoreContents(note="no result store found")

        source = self.results_file.name
        # read-only URI: never create or migrate the harness's database
        engine = sa.create_engine(f"sqlite:///file:{self.results_file.resolve()}?mode=ro&uri=true")
        try:
            with engine.connect() as conn:
                tables = set(sa.inspect(conn).get_table_names())
                if not _REQUIRED_TABLES <= tables:
                    return StoreContents(source=source, note="result store has no test results")

                rows = conn.execute(_RESULTS_QUERY).mappings().all()

                outputs: Dict[int, Dict[str, str]] = {}
                if _OUTPUT_TABLES <= tables:
                    for row in conn.execute(_OUTPUTS_QUERY).mappings():
                        outputs.setdefault(row["case_id"], {})[row["file_name"]] = _decode(row["contents"])
        except sa.exc.DatabaseError as e:
            return StoreContents(source=source, note=f"result store unreadable: {e.orig}")
        finally:
            engine.dispose()

        results = []
        for row in rows:
            files = outputs.get(row["case_id"], {})
            results.append(
                TestResult(
                    program=row["program"],
                    case=row["name"],
                    result=row["result"],
                    reason=row["reason"],
                    start_time=int(row["start_time"] or 0),
                    end_time=int(row["end_time"] or 0),
                    stdout=files.get("__STDOUT__", ""),
                    stderr=files.get("__STDERR__", ""),
                )
            )
        note = None if results else "result store is empty"
        return StoreContents(results=results, source=source, note=note)


def about_command() -> List[str]:
    return ["kyua", "about"]
