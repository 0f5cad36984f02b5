"""Static summary of an agent's source, fed to the suggestion generator."""

from __future__ import annotations

import ast

from pydantic import BaseModel, Field


class SourceAnalysis(BaseModel):
    lines: int = 0
    parsed: bool = False
    functions: list[str] = Field(default_factory=list)
    async_functions: int = 0
    classes: list[str] = Field(default_factory=list)
    try_blocks: int = 0
    bare_excepts: int = 0
    long_functions: list[str] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)


LONG_FUNCTION_LINES = 60


def analyze_source(source: str) -> SourceAnalysis:
    """Summarize Python source. Non-Python text only gets a line count."""
    result = SourceAnalysis(lines=source.count("\n") + 1 if source else 0)
    try:
        tree = ast.parse(source)
    except (SyntaxError, ValueError):
        result.issues.append("source is not parseable as Python")
        return result

    result.parsed = True
    for node in ast.walk(tree):
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            result.functions.append(node.name)
            if isinstance(node, ast.AsyncFunctionDef):
                result.async_functions += 1
            length = (node.end_lineno or node.lineno) - node.lineno + 1
            if length > LONG_FUNCTION_LINES:
                result.long_functions.append(node.name)
        elif isinstance(node, ast.ClassDef):
            result.classes.append(node.name)
        elif isinstance(node, ast.Try):
            result.try_blocks += 1
            result.bare_excepts += sum(1 for h in node.handlers if h.type is None)

    if result.bare_excepts:
        result.issues.append(f"{result.bare_excepts} bare except clause(s)")
    if result.long_functions:
        result.issues.append(
            f"long functions: {', '.join(result.long_functions[:5])}"
        )
    return result
