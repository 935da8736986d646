"""Stage specifications and the task graph builder.

A stage declares named input bindings, named output files, a resource label, and a
Jinja2 command template. Input bindings point either at a run parameter
(``params.<key>``) or at another stage's output (``<stage>.<output>``); the graph
edges are derived from those references. A binding marked ``scatter`` takes one
element of a partition, which turns the stage into a scatter stage expanded at run
time.
"""

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from jinja2 import Environment, StrictUndefined, TemplateError, UndefinedError

from .errors import CyclicGraphError, MissingInputError
from .partition import Interval

CONCATENATE = "concatenate"
COMBINE = "combine"
MERGE_STRATEGIES = (CONCATENATE, COMBINE)
COMMAND_STAGE = "command"
PARTITION_STAGE = "partition"
INPUT_KINDS = ("file", "scalar", "interval")

_JINJA_ENV = Environment(undefined=StrictUndefined, autoescape=False)


def parse_reference(reference: str) -> tuple[str, str]:
    """Split ``<stage>.<binding>`` into its stage and binding names.

    Args:
        reference: Dotted reference; the binding is the part after the last dot

    Returns:
        Tuple of (stage name, binding name)

    Raises:
        ValueError: If the reference has no binding part
    """
    stage, sep, binding = reference.rpartition(".")
    if not (sep and stage and binding):
        msg = f"Invalid binding reference (expected <stage>.<binding>): {reference}"
        raise ValueError(msg)
    return stage, binding


def render_command(template: str, **context: Any) -> str:
    """Render a command template with strict undefined-variable checks.

    Raises:
        MissingInputError: If the template references an unbound name
    """
    try:
        return _JINJA_ENV.from_string(template).render(**context).strip()
    except UndefinedError as e:
        msg = f"Unbound reference in command template: {e}"
        raise MissingInputError(msg) from e


@dataclass(frozen=True)
class Input:
    """An input binding of a stage.

    Attributes:
        source: ``params.<key>`` or ``<stage>.<output>``
        kind: ``file`` (content-hashed), ``scalar`` (value-compared), or
            ``interval`` (one partition element)
        optional: Allow the binding to resolve to nothing
        scatter: Bind one partition element per replica
    """

    source: str
    kind: str = "file"
    optional: bool = False
    scatter: bool = False

    @property
    def is_param(self) -> bool:
        return self.source.startswith("params.")

    @property
    def param_key(self) -> str:
        return self.source.removeprefix("params.")

    @property
    def producer(self) -> str | None:
        return None if self.is_param else parse_reference(self.source)[0]

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "kind": self.kind,
            "optional": self.optional,
            "scatter": self.scatter,
        }


@dataclass(frozen=True)
class StageSpec:
    """Declarative description of one pipeline stage."""

    name: str
    inputs: Mapping[str, Input] = field(default_factory=dict)
    outputs: Mapping[str, str] = field(default_factory=dict)
    command: str = ""
    label: str = "default"
    kind: str = COMMAND_STAGE
    publish: str | None = None
    merge: str = CONCATENATE
    combiner: str = ""
    combined_outputs: Mapping[str, str] = field(default_factory=dict)

    @property
    def scatter_input(self) -> tuple[str, Input] | None:
        for k, v in self.inputs.items():
            if v.scatter:
                return k, v
        return None

    @property
    def is_scatter(self) -> bool:
        return self.scatter_input is not None

    @property
    def upstream_stages(self) -> list[str]:
        producers = [i.producer for i in self.inputs.values() if i.producer]
        return list(dict.fromkeys(producers))

    @property
    def published_bindings(self) -> dict[str, str]:
        """Output bindings visible to consumers of this stage."""
        if self.is_scatter and self.merge == COMBINE:
            return {**self.outputs, **self.combined_outputs}
        return dict(self.outputs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "inputs": {k: v.to_dict() for k, v in self.inputs.items()},
            "outputs": dict(self.outputs),
            "command": self.command,
            "label": self.label,
            "kind": self.kind,
            "publish": self.publish,
            "merge": self.merge,
            "combiner": self.combiner,
            "combined_outputs": dict(self.combined_outputs),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StageSpec":
        return cls(
            **{
                **data,
                "inputs": {k: Input(**v) for k, v in data["inputs"].items()},
                "outputs": dict(data["outputs"]),
                "combined_outputs": dict(data.get("combined_outputs") or {}),
            }
        )


def partition_stage(
    name: str,
    genome: str,
    chunk_size: str,
    publish: str | None = None,
) -> StageSpec:
    """Build the stage description of a partitioner.

    Args:
        name: Stage name
        genome: Reference to a ``.fai`` or ``.dict`` file
        chunk_size: Reference to the chunk size (scalar)
        publish: Publish prefix, or None to keep the partition unpublished

    Returns:
        Stage specification whose ``intervals`` output feeds scatter inputs
    """
    return StageSpec(
        name=name,
        inputs={
            "genome": Input(genome),
            "chunk_size": Input(chunk_size, kind="scalar"),
        },
        outputs={"intervals": "intervals.json"},
        kind=PARTITION_STAGE,
        label="default",
        publish=publish,
    )


class TaskGraph:
    """Builder of a stage graph with edges derived from input bindings."""

    def __init__(self, stages: Iterable[StageSpec] = ()) -> None:
        self._stages: dict[str, StageSpec] = {}
        for s in stages:
            self.add(s)

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __getitem__(self, name: str) -> StageSpec:
        return self._stages[name]

    def __iter__(self) -> Iterator[StageSpec]:
        return iter(self._stages.values())

    def __len__(self) -> int:
        return len(self._stages)

    def add(self, spec: StageSpec) -> StageSpec:
        """Add a stage specification.

        Args:
            spec: Stage to add

        Returns:
            The added stage

        Raises:
            ValueError: If the stage is malformed or its name is taken
        """
        if spec.name in self._stages:
            msg = f"Duplicate stage name: {spec.name}"
            raise ValueError(msg)
        if not spec.name or "." in spec.name:
            msg = f"Stage names must be non-empty and contain no dots: {spec.name!r}"
            raise ValueError(msg)
        for b in [*spec.outputs, *spec.combined_outputs]:
            if "." in b:
                msg = f"Output binding names must contain no dots: {spec.name}.{b}"
                raise ValueError(msg)
        if sum(1 for i in spec.inputs.values() if i.scatter) > 1:
            msg = f"A stage can scatter over one partition only: {spec.name}"
            raise ValueError(msg)
        if spec.merge not in MERGE_STRATEGIES:
            msg = f"Unknown merge strategy for {spec.name}: {spec.merge}"
            raise ValueError(msg)
        if spec.merge == COMBINE and not (spec.combiner and spec.combined_outputs):
            msg = f"Combine strategy requires a combiner and its outputs: {spec.name}"
            raise ValueError(msg)
        for k, v in spec.inputs.items():
            if v.kind not in INPUT_KINDS:
                msg = f"Unknown input kind for {spec.name}.{k}: {v.kind}"
                raise ValueError(msg)
        self._stages[spec.name] = spec
        return spec

    def add_stage(
        self,
        name: str,
        input_bindings: Mapping[str, Input | str] | None = None,
        output_bindings: Mapping[str, str] | None = None,
        command: str = "",
        **kwargs: Any,
    ) -> StageSpec:
        """Declare a stage; string bindings are shorthand for file inputs.

        Args:
            name: Stage name
            input_bindings: Binding name to Input or source reference
            output_bindings: Binding name to output file name
            command: Jinja2 command template
            **kwargs: Other StageSpec fields (label, publish, merge, ...)

        Returns:
            The added stage
        """
        return self.add(
            StageSpec(
                name=name,
                inputs={
                    k: (v if isinstance(v, Input) else Input(v))
                    for k, v in (input_bindings or {}).items()
                },
                outputs=dict(output_bindings or {}),
                command=command,
                **kwargs,
            )
        )

    def wire(
        self, producer_output: str, consumer_input: str, **kwargs: Any
    ) -> StageSpec:
        """Bind a producer output to a consumer input.

        Args:
            producer_output: ``<stage>.<output>`` or ``params.<key>``
            consumer_input: ``<stage>.<input>``
            **kwargs: Input fields (kind, optional, scatter)

        Returns:
            The updated consumer stage
        """
        consumer, binding = parse_reference(consumer_input)
        if consumer not in self._stages:
            msg = f"Unknown consumer stage: {consumer}"
            raise MissingInputError(msg)
        spec = self._stages[consumer]
        updated = replace(
            spec, inputs={**spec.inputs, binding: Input(producer_output, **kwargs)}
        )
        self._stages[consumer] = updated
        return updated

    def upstream(self, name: str) -> list[str]:
        return self._stages[name].upstream_stages

    def edges(self) -> dict[str, list[str]]:
        """Return the adjacency of producer to consumer stages."""
        adjacency: dict[str, list[str]] = {s: [] for s in self._stages}
        for s in self._stages.values():
            for u in s.upstream_stages:
                if u in adjacency:
                    adjacency[u].append(s.name)
        return adjacency

    def sinks(self) -> list[str]:
        """Return the stages that no other stage consumes."""
        return [k for k, v in self.edges().items() if not v]

    def topological_order(self) -> list[str]:
        """Order stages so that producers precede consumers.

        Returns:
            Stage names in dependency order

        Raises:
            CyclicGraphError: If the graph contains a cycle
        """
        order: list[str] = []
        state: dict[str, int] = {}
        for root in self._stages:
            if root in state:
                continue
            state[root] = 1
            path = [root]
            stack = [iter(self.upstream(root))]
            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    stack.pop()
                    done = path.pop()
                    state[done] = 2
                    order.append(done)
                elif nxt not in self._stages or state.get(nxt) == 2:
                    continue
                elif state.get(nxt) == 1:
                    cycle = path[path.index(nxt) :] + [nxt]
                    raise CyclicGraphError(cycle[::-1])
                else:
                    state[nxt] = 1
                    path.append(nxt)
                    stack.append(iter(self.upstream(nxt)))
        return order

    def required_params(self) -> dict[str, list[str]]:
        """Map each referenced run parameter to the stages that require it."""
        required: dict[str, list[str]] = {}
        for s in self._stages.values():
            for i in s.inputs.values():
                if i.is_param and not i.optional:
                    required.setdefault(i.param_key, []).append(s.name)
        return required

    def validate(
        self,
        params: Mapping[str, Any],
        context: Mapping[str, Any] | None = None,
    ) -> list[str]:
        """Check bindings, parameters, and templates, then order the stages.

        Args:
            params: Run parameters
            context: Extra template variables (tools, n_cpu, memory_mb)

        Returns:
            Stage names in dependency order

        Raises:
            MissingInputError: If a binding, parameter, or template name is unbound
            CyclicGraphError: If the graph contains a cycle
        """
        logger = logging.getLogger(__name__)
        missing_params = sorted(
            f"{k} (required by {', '.join(v)})"
            for k, v in self.required_params().items()
            if params.get(k) in (None, "", [], ())
        )
        if missing_params:
            msg = "Missing run parameters: {}".format("; ".join(missing_params))
            raise MissingInputError(msg)
        for s in self._stages.values():
            self._validate_bindings(s)
        order = self.topological_order()
        for s in self._stages.values():
            self._validate_templates(s, params=params, context=context or {})
        logger.debug("stage order:\t%s", order)
        return order

    def _validate_bindings(self, spec: StageSpec) -> None:
        for k, v in spec.inputs.items():
            if v.is_param:
                if v.scatter:
                    msg = f"Scatter input must come from a partition: {spec.name}.{k}"
                    raise MissingInputError(msg)
                continue
            producer, binding = parse_reference(v.source)
            if producer not in self._stages:
                msg = f"{spec.name}.{k} references an unknown stage: {v.source}"
                raise MissingInputError(msg)
            p = self._stages[producer]
            if binding not in p.published_bindings:
                msg = f"{spec.name}.{k} references an unknown output: {v.source}"
                raise MissingInputError(msg)
            if v.scatter and p.kind != PARTITION_STAGE:
                msg = f"Scatter input must come from a partition: {spec.name}.{k}"
                raise MissingInputError(msg)

    def _placeholder(self, spec: StageSpec, name: str, value: Input) -> Any:
        if value.scatter:
            return Interval(index=0, contig="chrN", start=0, end=1)
        if value.producer:
            p = self._stages[value.producer]
            _, binding = parse_reference(value.source)
            if p.is_scatter and binding not in (
                p.combined_outputs if p.merge == COMBINE else {}
            ):
                return [f"<{value.source}>"]
        return f"<{spec.name}.{name}>"

    def _validate_templates(
        self, spec: StageSpec, params: Mapping[str, Any], context: Mapping[str, Any]
    ) -> None:
        if spec.kind == PARTITION_STAGE:
            return
        inputs = {k: self._placeholder(spec, k, v) for k, v in spec.inputs.items()}
        for k, v in spec.inputs.items():
            if v.is_param and v.kind == "scalar" and params.get(v.param_key):
                inputs[k] = params[v.param_key]
        try:
            render_command(
                spec.command,
                inputs=inputs,
                outputs={k: f"<{k}>" for k in spec.outputs},
                **context,
            )
            if spec.is_scatter and spec.merge == COMBINE:
                render_command(
                    spec.combiner,
                    inputs={
                        **{k: [f"<{k}>"] for k in spec.outputs},
                        **{
                            k: v
                            for k, v in inputs.items()
                            if not spec.inputs[k].scatter and k not in spec.outputs
                        },
                    },
                    outputs={k: f"<{k}>" for k in spec.combined_outputs},
                    **context,
                )
        except MissingInputError as e:
            msg = f"{spec.name}: {e}"
            raise MissingInputError(msg) from e
        except TemplateError as e:
            msg = f"Invalid command template in {spec.name}: {e}"
            raise ValueError(msg) from e
