import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Pattern, Sequence


# -----------------------------------------------------------------------------
# SAFETY VALIDATOR
# Purpose: reject plans that must never reach the warehouse.
# Runs on the raw planner output, before the plan is compiled.
# -----------------------------------------------------------------------------

DEFAULT_FIDELITY_THRESHOLD = 0.7

# Day-sharded wildcard tables, e.g. githubarchive.day.2024* or githubarchive.day.*
DEFAULT_SHARDED_TABLE_PATTERNS = (
    r"githubarchive\.day\.[0-9]{4}\*",
    r"githubarchive\.day\.\*",
)
DEFAULT_PARTITION_COLUMN = "_TABLE_SUFFIX"
PARTITION_OPERATORS = ("=", "IN", "BETWEEN")


@dataclass
class ValidationResult:
    ok: bool
    reason: Optional[str] = None


class SafetyValidator:
    """
    Accept or reject a planner response.

    Rejects when:
        - the root or main query is missing
        - the table is missing or not a string
        - columns are empty or contain "*"
        - the planner abstained or reported fidelity below the threshold
        - a day-sharded wildcard table has no partition-suffix filter
    """

    def __init__(
        self,
        fidelity_threshold: float = DEFAULT_FIDELITY_THRESHOLD,
        sharded_table_patterns: Sequence[str] = DEFAULT_SHARDED_TABLE_PATTERNS,
        partition_column: str = DEFAULT_PARTITION_COLUMN,
    ):
        self.fidelity_threshold = fidelity_threshold
        self.sharded_table_patterns: Sequence[Pattern] = [
            re.compile(pattern) for pattern in sharded_table_patterns
        ]
        self.partition_column = partition_column

    def validate(self, plan: Any, metadata: Optional[Dict[str, Any]] = None) -> ValidationResult:
        metadata = metadata or {}

        if metadata.get("abstain"):
            return ValidationResult(False, "Planner abstained")

        fidelity = metadata.get("fidelity")
        if not isinstance(fidelity, (int, float)) or isinstance(fidelity, bool):
            fidelity = 0.0
        if fidelity < self.fidelity_threshold:
            return ValidationResult(
                False, f"Fidelity {fidelity:.2f} is below threshold {self.fidelity_threshold:.2f}"
            )

        if not plan or not isinstance(plan, dict):
            return ValidationResult(False, "Invalid plan")

        main = plan.get("main_query")
        if not main or not isinstance(main, dict):
            return ValidationResult(False, "Missing main_query")

        result = self.validate_query(main)
        if not result.ok:
            return result

        for cte in plan.get("ctes") or []:
            query = cte.get("query") if isinstance(cte, dict) else None
            if not isinstance(query, dict):
                return ValidationResult(False, "Invalid CTE")
            result = self.validate_query(query)
            if not result.ok:
                return result

        return ValidationResult(True)

    def validate_query(self, query: Dict[str, Any]) -> ValidationResult:
        table = query.get("table")
        if not table or not isinstance(table, str):
            return ValidationResult(False, "Missing table")

        columns = query.get("columns")
        if not isinstance(columns, list) or len(columns) == 0:
            return ValidationResult(False, "Missing columns")
        if any(isinstance(column, str) and column.strip() == "*" for column in columns):
            return ValidationResult(False, "Wildcard columns are not allowed")

        if self.is_sharded_wildcard(table) and not self.has_partition_filter(
            query.get("filters") or []
        ):
            return ValidationResult(
                False, f"Wildcard day table requires {self.partition_column} filter"
            )

        return ValidationResult(True)

    def is_sharded_wildcard(self, table: str) -> bool:
        return any(pattern.search(table) for pattern in self.sharded_table_patterns)

    def has_partition_filter(self, filters: Iterable[Any]) -> bool:
        """
        True when some filter constrains the partition column with =, IN or BETWEEN.

        Only top-level filters and AND groups count: a constraint inside an
        OR group does not bound the scan.
        """
        for node in filters:
            if not isinstance(node, dict):
                continue
            if "logic" in node:
                if node.get("logic") == "AND" and self.has_partition_filter(
                    node.get("filters") or []
                ):
                    return True
                continue
            if node.get("column") == self.partition_column and node.get("op") in PARTITION_OPERATORS:
                return True
        return False
