from typing import Any, Dict, List, Sequence, Union

import pydantic

from app.core.errors import CompileError, ValidationError
from app.core.schemas import (
    FilterGroup,
    FilterLeaf,
    FilterNode,
    QueryPlan,
    RootQueryPlan,
    VariableRef,
)


# -----------------------------------------------------------------------------
# PLAN COMPILER
# Purpose: turn a structured query plan into SQL text, deterministically.
# Table and column names are not checked here; the executor's dry run does that.
# -----------------------------------------------------------------------------

DEFAULT_LIMIT = 20
MAX_LIMIT = 50

ALLOWED_OPERATORS = ("=", "!=", ">", "<", ">=", "<=", "IN", "BETWEEN")


def parse_plan(raw: Union[RootQueryPlan, Dict[str, Any]]) -> RootQueryPlan:
    """
    Deserialize a raw plan, rejecting unknown shapes.

    Args:
        raw: Plan as returned by the planner (dict) or an already parsed plan.

    Returns:
        RootQueryPlan

    Raises:
        ValidationError: if the plan does not match the plan schema.
    """
    if isinstance(raw, RootQueryPlan):
        return raw

    try:
        return RootQueryPlan.model_validate(raw)
    except pydantic.ValidationError as error:
        first = error.errors()[0] if error.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"Malformed plan at '{location}': {first.get('msg', 'invalid')}")


class PlanCompiler:
    """
    Compile RootQueryPlan objects into SQL.

    Example:
        compiler = PlanCompiler()
        sql = compiler.compile({"main_query": {"table": "t", "columns": ["id"]}})
        # SELECT id FROM t WHERE 1=1 LIMIT 20
    """

    def __init__(
        self,
        allowed_operators: Sequence[str] = ALLOWED_OPERATORS,
        default_limit: int = DEFAULT_LIMIT,
        max_limit: int = MAX_LIMIT,
    ):
        self.allowed_operators = tuple(allowed_operators)
        self.default_limit = default_limit
        self.max_limit = max_limit

    def compile(self, root: Union[RootQueryPlan, Dict[str, Any]]) -> str:
        plan = parse_plan(root)

        main = self.compile_single(plan.main_query)
        if not plan.ctes:
            return main

        ctes = ", ".join(
            f"{cte.name} AS ({self.compile_single(cte.query, optional_limit=True)})"
            for cte in plan.ctes
        )
        return f"WITH {ctes}\n{main}"

    def compile_single(self, plan: QueryPlan, optional_limit: bool = False) -> str:
        """
        Compile one SELECT.

        CTE sub-queries (optional_limit=True) only get a LIMIT when they ask
        for a positive one; the main query always gets one.
        """
        if not plan.columns or any(column.strip() == "*" for column in plan.columns):
            raise CompileError("Invalid columns")

        select = ", ".join(plan.columns)
        where = self.render_filters(plan.filters) if plan.filters else "1=1"

        sql = f"SELECT {select} FROM {plan.table} WHERE {where}"

        if plan.groupBy:
            sql += f" GROUP BY {', '.join(plan.groupBy)}"

        if plan.orderBy:
            parts = []
            for order in plan.orderBy:
                if order.direction:
                    parts.append(f"{order.column} {order.direction.value}")
                else:
                    parts.append(order.column)
            sql += f" ORDER BY {', '.join(parts)}"

        requested = plan.limit if plan.limit and plan.limit > 0 else None

        if optional_limit:
            if requested is not None:
                sql += f" LIMIT {min(requested, self.max_limit)}"
            return sql

        sql += f" LIMIT {min(requested or self.default_limit, self.max_limit)}"
        return sql

    # =========================================================================
    # FILTER TREE
    # =========================================================================

    def render_filters(self, filters: List[FilterNode]) -> str:
        return " AND ".join(self.render_node(node) for node in filters)

    def render_node(self, node: FilterNode) -> str:
        # Groups are always parenthesized so precedence never depends on nesting
        if isinstance(node, FilterGroup):
            if not node.filters:
                raise CompileError("Filter group requires at least one filter")
            joined = f" {node.logic} ".join(self.render_node(child) for child in node.filters)
            return f"({joined})"

        if isinstance(node, FilterLeaf):
            return self.render_leaf(node)

        raise CompileError(f"Unknown filter node: {type(node).__name__}")

    def render_leaf(self, leaf: FilterLeaf) -> str:
        if leaf.op not in self.allowed_operators:
            raise CompileError(f"Operator not allowed: {leaf.op}")

        if leaf.op == "BETWEEN":
            if not isinstance(leaf.value, list) or len(leaf.value) != 2:
                raise CompileError("BETWEEN operator requires an array value of length 2")
            low, high = leaf.value
            return (
                f"{leaf.column} BETWEEN {self.format_value(low)} AND {self.format_value(high)}"
            )

        if leaf.op == "IN" and not isinstance(leaf.value, list):
            raise CompileError("IN operator requires array value")

        return f"{leaf.column} {leaf.op} {self.format_value(leaf.value)}"

    # =========================================================================
    # LITERALS
    # =========================================================================

    def format_value(self, value: Any) -> str:
        if isinstance(value, VariableRef):
            return value.var
        if isinstance(value, list):
            return f"({', '.join(self.format_value(item) for item in value)})"
        if isinstance(value, str):
            return "'" + value.replace("'", "''") + "'"
        if isinstance(value, bool):
            return "TRUE" if value else "FALSE"
        if value is None:
            return "NULL"
        return str(value)

