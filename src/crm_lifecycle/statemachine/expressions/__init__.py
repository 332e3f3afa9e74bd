"""Guard and formula mini-language.

Strings are parsed once (at definition load) into an immutable AST which is then
shared by guard evaluation (boolean, fails closed) and formula evaluation
(typed value, errors propagate).
"""

from crm_lifecycle.statemachine.expressions.ast import Expression
from crm_lifecycle.statemachine.expressions.evaluator import (
    EntityResolver,
    EvaluationContext,
    evaluate_formula,
    evaluate_guard,
    render_template,
    render_text,
)
from crm_lifecycle.statemachine.expressions.parser import parse_expression

__all__ = [
    "EntityResolver",
    "EvaluationContext",
    "Expression",
    "evaluate_formula",
    "evaluate_guard",
    "parse_expression",
    "render_template",
    "render_text",
]
