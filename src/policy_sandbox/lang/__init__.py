"""Restricted script language used for conditions, actions and scripts."""

from policy_sandbox.lang.interpreter import Interpreter, strict_equal, to_display, truthy
from policy_sandbox.lang.parser import parse_expression, parse_program

__all__ = [
    "Interpreter",
    "parse_expression",
    "parse_program",
    "strict_equal",
    "to_display",
    "truthy",
]
