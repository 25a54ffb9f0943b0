"""Sandboxed expression evaluation and simulation registry."""
from agent_arena.sandbox.expression import (
    FUNCTIONS,
    CompiledExpression,
    Evaluation,
    SandboxRejection,
    compile_expression,
    evaluate,
)
from agent_arena.sandbox.simulation import (
    Simulation,
    SimulationError,
    SimulationRegistry,
    SimulationRun,
)

__all__ = [
    "FUNCTIONS",
    "CompiledExpression",
    "Evaluation",
    "SandboxRejection",
    "compile_expression",
    "evaluate",
    "Simulation",
    "SimulationError",
    "SimulationRegistry",
    "SimulationRun",
]
