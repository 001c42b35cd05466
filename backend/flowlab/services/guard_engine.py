"""
Guard engine for evaluating edge and branch conditions.

Guards compare a user_state value against a literal:
    user_state.age >= 18
    user_state.treatment == 'control'

Supports:
- Comparison operators: ==, !=, >, <, >=, <=
- Logical operators: &&, ||, !, AND, OR, NOT
- Literals: true, false, numbers, quoted strings, bare words (as strings)

Ordering operators only hold between two numbers. A guard that cannot
be parsed never matches.
"""
from typing import Dict, Any
import re
import operator
import logging

logger = logging.getLogger(__name__)


class GuardEngine:
    """
    Evaluates `when` expressions on flow edges and button branches
    against the participant's user_state.
    """

    OPERATORS = {
        "==": operator.eq,
        "!=": operator.ne,
        ">": operator.gt,
        "<": operator.lt,
        ">=": operator.ge,
        "<=": operator.le,
    }

    ORDERING = {">", "<", ">=", "<="}

    COMPARISON_RE = re.compile(r"^user_state\.(\w+)\s*(==|!=|<=|>=|<|>)\s*(.+)$")

    def evaluate(self, expr: str, user_state: Dict[str, Any]) -> bool:
        """
        Evaluate a guard expression.

        Args:
            expr: The guard expression
            user_state: Participant state keyed by state key

        Returns:
            True if the guard matches
        """
        if not expr or not isinstance(expr, str):
            return False

        expr = expr.strip()

        if expr.lower() == "true":
            return True
        if expr.lower() == "false":
            return False

        if re.search(r"\s+OR\s+", expr, flags=re.IGNORECASE):
            parts = re.split(r"\s+OR\s+", expr, flags=re.IGNORECASE)
            return any(self.evaluate(part, user_state) for part in parts)

        if " || " in expr:
            return any(self.evaluate(part, user_state) for part in expr.split(" || "))

        if re.search(r"\s+AND\s+", expr, flags=re.IGNORECASE):
            parts = re.split(r"\s+AND\s+", expr, flags=re.IGNORECASE)
            return all(self.evaluate(part, user_state) for part in parts)

        if " && " in expr:
            return all(self.evaluate(part, user_state) for part in expr.split(" && "))

        if expr.upper().startswith("NOT "):
            return not self.evaluate(expr[4:], user_state)

        if expr.startswith("!") and not expr.startswith("!="):
            return not self.evaluate(expr[1:], user_state)

        if expr.startswith("(") and expr.endswith(")"):
            return self.evaluate(expr[1:-1], user_state)

        return self._evaluate_comparison(expr, user_state)

    def _evaluate_comparison(self, expr: str, user_state: Dict[str, Any]) -> bool:
        match = self.COMPARISON_RE.match(expr)
        if not match:
            logger.warning(f"Unparsable guard expression: '{expr}'")
            return False

        key, op_str, raw_value = match.groups()
        left = user_state.get(key)
        right = self._parse_literal(raw_value.strip())

        if op_str in self.ORDERING and not (self._is_number(left) and self._is_number(right)):
            return False

        return self.OPERATORS[op_str](left, right)

    def _parse_literal(self, token: str) -> Any:
        """Resolve a right-hand token to its value"""
        if token == "true":
            return True
        if token == "false":
            return False

        try:
            if any(ch in token for ch in ".eE"):
                return float(token)
            return int(token)
        except ValueError:
            pass

        if len(token) >= 2 and token[0] == token[-1] and token[0] in ("'", '"'):
            return token[1:-1]

        return token

    @staticmethod
    def _is_number(value: Any) -> bool:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
