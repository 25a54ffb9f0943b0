"""Simulation registry: named, ordered sets of sandboxed equations.

A simulation is defined once (every equation compiled and validated up front)
and can then be run any number of times with different inputs. Equations run
in definition order and each output becomes a variable for the equations
after it.
"""

import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import structlog

from agent_arena.core.config import SandboxConfig, sandbox_config
from agent_arena.sandbox.expression import (
    FUNCTIONS,
    CompiledExpression,
    SandboxRejection,
    coerce_variables,
    compile_expression,
)

logger = structlog.get_logger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")

HIGH_CONFIDENCE = 0.85
LOW_CONFIDENCE = 0.45
MAX_REASONABLE_MAGNITUDE = 1e10


class SimulationError(ValueError):
    """Invalid simulation definition, or unknown/expired simulation id."""


@dataclass
class VariableSpec:
    """Declared simulation input.

    Attributes:
        name: Variable name usable in equations
        default: Value used when neither an override nor a source resolves
        source: Market-sourced value name (e.g. "BTCUSDT_price")
    """
    name: str
    default: Optional[float] = None
    source: Optional[str] = None


@dataclass
class Simulation:
    id: str
    name: str
    description: str
    equations: List[Tuple[str, CompiledExpression]]
    variables: Dict[str, VariableSpec]
    created_at: float

    @property
    def sources(self) -> Dict[str, str]:
        return {v.name: v.source for v in self.variables.values() if v.source}


@dataclass
class SimulationRun:
    """Outputs of one simulation run."""
    outputs: Dict[str, float]
    confidence: float
    convergence: bool
    iterations: int
    execution_time_ms: float
    failed_equations: Dict[str, str] = field(default_factory=dict)
    unresolved_inputs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outputs": dict(self.outputs),
            "confidence": self.confidence,
            "metadata": {
                "convergence": self.convergence,
                "iterations": self.iterations,
                "execution_time_ms": round(self.execution_time_ms, 3),
                "failed_equations": dict(self.failed_equations),
                "unresolved_inputs": list(self.unresolved_inputs),
            },
        }


def _valid_name(name: Any) -> bool:
    return isinstance(name, str) and bool(_NAME_RE.match(name)) and name not in FUNCTIONS


class SimulationRegistry:
    """Thread-safe store of defined simulations with TTL and capacity bounds.

    Expired entries are dropped lazily on every define/run/lookup. When the
    registry is full the oldest simulation is evicted.
    """

    def __init__(
        self,
        config: Optional[SandboxConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or sandbox_config
        self._clock = clock
        self._lock = threading.Lock()
        self._simulations: "OrderedDict[str, Simulation]" = OrderedDict()
        self._counter = 0

    def __len__(self) -> int:
        with self._lock:
            self._expire()
            return len(self._simulations)

    def __contains__(self, simulation_id: str) -> bool:
        with self._lock:
            self._expire()
            return simulation_id in self._simulations

    def clear(self) -> None:
        with self._lock:
            self._simulations.clear()

    def prune(self) -> int:
        """Drop expired simulations; return how many were removed."""
        with self._lock:
            return self._expire()

    def _expire(self) -> int:
        cutoff = self._clock() - self.config.simulation_ttl_seconds
        expired = [sid for sid, sim in self._simulations.items() if sim.created_at <= cutoff]
        for sid in expired:
            del self._simulations[sid]
        if expired:
            logger.debug("simulation.expired", count=len(expired))
        return len(expired)

    # -------------------------------------------------------------------------
    # Define
    # -------------------------------------------------------------------------

    def define_simulation(
        self,
        name: str,
        equations: Sequence[Mapping[str, Any]],
        variable_defaults: Optional[Mapping[str, Any]] = None,
        variables: Optional[Sequence[Mapping[str, Any]]] = None,
        description: str = "",
    ) -> str:
        """Validate and store a simulation, returning its id.

        Raises:
            SimulationError: if the name, any equation, or any variable
                declaration is invalid. Nothing is stored in that case.
        """
        if not isinstance(name, str) or not name.strip():
            raise SimulationError("Simulation must have a name")
        if not isinstance(equations, (list, tuple)) or not equations:
            raise SimulationError("Simulation must have at least one equation")
        limit = self.config.max_simulation_equations
        if len(equations) > limit:
            raise SimulationError(f"Simulation cannot have more than {limit} equations")

        declared = self._declare_variables(variable_defaults, variables)

        compiled: List[Tuple[str, CompiledExpression]] = []
        known = set(declared)
        for index, equation in enumerate(equations):
            if not isinstance(equation, Mapping):
                raise SimulationError(f"Equation {index} must be an object with name and expression")
            eq_name = equation.get("name")
            expression = equation.get("expression")
            if not _valid_name(eq_name):
                raise SimulationError(f"Equation {index} has an invalid name: {eq_name!r}")
            if eq_name in known:
                raise SimulationError(f"Equation name {eq_name!r} is already defined")
            try:
                compiled.append((eq_name, compile_expression(expression, known, self.config)))
            except SandboxRejection as e:
                raise SimulationError(f"Invalid equation {eq_name!r}: {e}") from None
            known.add(eq_name)

        with self._lock:
            self._expire()
            while len(self._simulations) >= self.config.max_simulations:
                evicted, _ = self._simulations.popitem(last=False)
                logger.info("simulation.evicted", simulation_id=evicted)
            self._counter += 1
            simulation_id = f"sim_{self._counter}_{int(time.time() * 1000)}"
            self._simulations[simulation_id] = Simulation(
                id=simulation_id,
                name=name.strip(),
                description=description or "",
                equations=compiled,
                variables=declared,
                created_at=self._clock(),
            )

        logger.info(
            "simulation.defined",
            simulation_id=simulation_id,
            name=name,
            equations=len(compiled),
            inputs=sorted(declared),
        )
        return simulation_id

    @staticmethod
    def _declare_variables(
        variable_defaults: Optional[Mapping[str, Any]],
        variables: Optional[Sequence[Mapping[str, Any]]],
    ) -> Dict[str, VariableSpec]:
        declared: Dict[str, VariableSpec] = {}

        if variable_defaults:
            try:
                defaults = coerce_variables(variable_defaults)
            except SandboxRejection as e:
                raise SimulationError(f"Invalid variable defaults: {e}") from None
            for var_name, value in defaults.items():
                if not _valid_name(var_name):
                    raise SimulationError(f"Invalid variable name: {var_name!r}")
                declared[var_name] = VariableSpec(name=var_name, default=value)

        if variables is None:
            return declared
        if not isinstance(variables, (list, tuple)):
            raise SimulationError("Variables must be a list of declarations")

        for item in variables:
            if not isinstance(item, Mapping):
                raise SimulationError("Each variable declaration must be an object")
            var_name = item.get("name")
            if not _valid_name(var_name):
                raise SimulationError(f"Invalid variable name: {var_name!r}")
            spec = declared.get(var_name, VariableSpec(name=var_name))

            default = item.get("defaultValue", item.get("default"))
            if default is not None:
                try:
                    spec.default = coerce_variables({var_name: default})[var_name]
                except SandboxRejection as e:
                    raise SimulationError(f"Invalid default for {var_name!r}: {e}") from None

            source = item.get("source")
            if source is not None:
                if not isinstance(source, str) or not source.strip():
                    raise SimulationError(f"Invalid source for {var_name!r}")
                spec.source = source.strip()

            declared[var_name] = spec

        return declared

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def get(self, simulation_id: str) -> Simulation:
        """Return a live simulation or raise SimulationError."""
        with self._lock:
            self._expire()
            simulation = self._simulations.get(simulation_id)
        if simulation is None:
            raise SimulationError(f"Simulation {simulation_id} not found or expired")
        return simulation

    def run_simulation(
        self,
        simulation_id: str,
        overrides: Optional[Mapping[str, Any]] = None,
        market_values: Optional[Mapping[str, float]] = None,
    ) -> SimulationRun:
        """Run a simulation.

        Each declared input resolves to the explicit override, else the
        market-sourced value, else its default. A rejected equation is left
        out of the outputs and marks the run as not converged; the remaining
        equations still run.
        """
        simulation = self.get(simulation_id)
        try:
            override_values = coerce_variables(overrides or {})
        except SandboxRejection as e:
            raise SimulationError(f"Invalid parameters: {e}") from None
        market_values = market_values or {}

        started = time.perf_counter()
        env: Dict[str, float] = {}
        unresolved: List[str] = []
        for var_name, spec in simulation.variables.items():
            if var_name in override_values:
                env[var_name] = override_values[var_name]
            elif var_name in market_values:
                env[var_name] = float(market_values[var_name])
            elif spec.default is not None:
                env[var_name] = spec.default
            else:
                unresolved.append(var_name)

        outputs: Dict[str, float] = {}
        failed: Dict[str, str] = {}
        for eq_name, compiled in simulation.equations:
            try:
                value = compiled.evaluate(env, self.config.evaluation_timeout_seconds)
            except SandboxRejection as e:
                failed[eq_name] = str(e)
                continue
            outputs[eq_name] = value
            env[eq_name] = value

        reasonable = all(abs(v) < MAX_REASONABLE_MAGNITUDE for v in outputs.values())
        convergence = not failed and reasonable

        run = SimulationRun(
            outputs=outputs,
            confidence=HIGH_CONFIDENCE if convergence else LOW_CONFIDENCE,
            convergence=convergence,
            iterations=len(simulation.equations),
            execution_time_ms=(time.perf_counter() - started) * 1000,
            failed_equations=failed,
            unresolved_inputs=unresolved,
        )
        logger.debug(
            "simulation.run",
            simulation_id=simulation_id,
            convergence=convergence,
            failed=sorted(failed),
        )
        return run
