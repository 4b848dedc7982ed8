"""
Scenario document loader: YAML/JSON files validated with pydantic and built
into :class:`~chorus.graph.ScenarioGraph` objects, subroutine files included.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path, PurePath
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence

import yaml
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .config import get_settings
from .errors import ScenarioLoadError
from .graph import GraphBuilder, ScenarioGraph
from .values import freeze

logger = logging.getLogger("chorus.loader")

EVENT_KINDS = ("bind", "send", "recv", "respond", "delay", "call")


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


def _json_value(value: Any) -> Any:
    try:
        return freeze(value)
    except TypeError as exc:
        raise ValueError(str(exc)) from exc


Data = Annotated[Any, AfterValidator(_json_value)]


class BindBody(_Strict):
    dst: Data
    src: Data


class SendBody(_Strict):
    sender: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    type: Optional[str] = None
    data: Data = None


class RecvBody(_Strict):
    source: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    type: Optional[str] = None
    timeout: Optional[int] = Field(default=None, ge=1)
    data: Data = "$_"


class RespondBody(_Strict):
    request: str = Field(alias="to")
    sender: Optional[str] = Field(default=None, alias="from")
    data: Data = None


class DelayBody(_Strict):
    steps: int = Field(default=1, ge=0)


class CallBody(_Strict):
    sub: str
    inputs: List[List[Any]] = Field(default_factory=list, alias="in")
    outputs: List[List[Any]] = Field(default_factory=list, alias="out")
    actors: Dict[str, str] = Field(default_factory=dict)
    dummies: Dict[str, str] = Field(default_factory=dict)

    @field_validator("inputs", "outputs")
    @classmethod
    def _pairs(cls, value: List[List[Any]]) -> List[List[Any]]:
        for pair in value:
            if len(pair) != 2:
                raise ValueError(f"copies are [src, dst] pairs, got {pair!r}")
        return [[_json_value(item) for item in pair] for pair in value]


class EventEntry(_Strict):
    id: str
    require: Optional[Literal["reached", "unreached"]] = None
    happens_after: List[str] = Field(default_factory=list)
    bind: Optional[BindBody] = None
    send: Optional[SendBody] = None
    recv: Optional[RecvBody] = None
    respond: Optional[RespondBody] = None
    delay: Optional[DelayBody] = None
    call: Optional[CallBody] = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_after(cls, data: Any) -> Any:
        if isinstance(data, dict) and "after" in data and "happens_after" not in data:
            data = dict(data)
            data["happens_after"] = data.pop("after")
        return data

    @model_validator(mode="after")
    def _exactly_one_kind(self) -> "EventEntry":
        kinds = [kind for kind in EVENT_KINDS if getattr(self, kind) is not None]
        if len(kinds) != 1:
            raise ValueError(f"event '{self.id}' must have exactly one of {', '.join(EVENT_KINDS)}; found {kinds or 'none'}")
        return self

    @property
    def kind(self) -> str:
        return next(kind for kind in EVENT_KINDS if getattr(self, kind) is not None)


class SubroutineImport(_Strict):
    load: str
    alias: str = Field(alias="as")


class ScenarioDocument(_Strict):
    format: Literal["1"] = "1"
    name: Optional[str] = None
    actors: List[str] = Field(default_factory=list)
    dummies: List[str] = Field(default_factory=list)
    subroutines: List[SubroutineImport] = Field(default_factory=list)
    events: List[EventEntry]

    @field_validator("subroutines")
    @classmethod
    def _unique_aliases(cls, value: List[SubroutineImport]) -> List[SubroutineImport]:
        seen: set[str] = set()
        for item in value:
            if item.alias in seen:
                raise ValueError(f"Duplicate subroutine alias: {item.alias}")
            seen.add(item.alias)
        return value


def parse_document(text: str, *, fmt: str = "yaml", source: str | None = None) -> ScenarioDocument:
    try:
        data = json.loads(text) if fmt == "json" else yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ScenarioLoadError(f"Syntax error: {exc}", code="CH-1002", location=source) from exc
    if not isinstance(data, dict):
        raise ScenarioLoadError("Scenario document must be a mapping", code="CH-1003", location=source)
    try:
        return ScenarioDocument.model_validate(data)
    except ValidationError as exc:
        raise ScenarioLoadError(f"Invalid scenario: {exc}", code="CH-1003", location=source) from exc


def build_graph(document: ScenarioDocument | Dict[str, Any], *, name: str | None = None,
                source: str | None = None, subroutines: Dict[str, ScenarioGraph] | None = None) -> ScenarioGraph:
    if not isinstance(document, ScenarioDocument):
        try:
            document = ScenarioDocument.model_validate(document)
        except ValidationError as exc:
            raise ScenarioLoadError(f"Invalid scenario: {exc}", code="CH-1003", location=source) from exc
    builder = GraphBuilder(name or document.name or "main", source=source)
    for actor in document.actors:
        builder.declare_actor(actor)
    for dummy in document.dummies:
        builder.declare_dummy(dummy)
    subroutines = subroutines or {}
    for item in document.subroutines:
        if item.alias not in subroutines:
            raise ScenarioLoadError(f"Subroutine '{item.alias}' was not loaded", code="CH-1006", location=source)
        builder.add_subroutine(item.alias, subroutines[item.alias])
    for event in document.events:
        opts = {"after": event.happens_after, "require": event.require}
        kind = event.kind
        if kind == "bind":
            builder.add_bind(event.id, event.bind.dst, event.bind.src, **opts)
        elif kind == "send":
            body = event.send
            builder.add_send(event.id, body.data, target=body.to, sender=body.sender, type=body.type, **opts)
        elif kind == "recv":
            body = event.recv
            builder.add_recv(event.id, body.data, source=body.source, to=body.to, type=body.type,
                              timeout=body.timeout, **opts)
        elif kind == "respond":
            body = event.respond
            builder.add_respond(event.id, body.request, body.data, sender=body.sender, **opts)
        elif kind == "delay":
            builder.add_delay(event.id, event.delay.steps, **opts)
        else:
            body = event.call
            builder.add_call(event.id, body.sub, body.inputs, body.outputs,
                             actors=body.actors, dummies=body.dummies, **opts)
    return builder.build()


class ScenarioLoader:
    """
    Loads an entry scenario and, recursively, the subroutine files it
    imports. Subroutine paths are relative and looked up next to the
    including file first, then along the search path.
    """

    def __init__(self, search_path: Sequence[str | Path] | None = None) -> None:
        paths = search_path if search_path is not None else get_settings().search_path
        self.search_path = [Path(entry) for entry in paths]
        self._graphs: Dict[Path, ScenarioGraph] = {}

    def load(self, path: str | Path) -> ScenarioGraph:
        entry = Path(path)
        if not entry.is_file():
            raise ScenarioLoadError(f"File not found: {entry}", code="CH-1001", location=str(entry))
        return self._load(entry.resolve(), name=None, stack=[])

    def _load(self, path: Path, *, name: str | None, stack: List[Path]) -> ScenarioGraph:
        if path in stack:
            chain = " -> ".join(str(item) for item in stack + [path])
            raise ScenarioLoadError(f"Cyclic subroutine reference: {chain}", code="CH-1004", location=str(path))
        if path in self._graphs:
            return self._graphs[path]
        logger.debug("loading %s", path)
        document = self.read(path)
        subroutines: Dict[str, ScenarioGraph] = {}
        for item in document.subroutines:
            sub_path = self._locate(item.load, base=path.parent, source=str(path))
            subroutines[item.alias] = self._load(sub_path, name=item.alias, stack=stack + [path])
        graph = build_graph(document, name=name or document.name or path.stem, source=str(path),
                            subroutines=subroutines)
        self._graphs[path] = graph
        return graph

    def read(self, path: Path) -> ScenarioDocument:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ScenarioLoadError(f"Cannot read scenario: {exc}", code="CH-1001", location=str(path)) from exc
        except UnicodeDecodeError as exc:
            raise ScenarioLoadError(f"Scenario is not valid UTF-8: {exc}", code="CH-1002", location=str(path)) from exc
        fmt = "json" if path.suffix.lower() == ".json" else "yaml"
        return parse_document(text, fmt=fmt, source=str(path))

    def _locate(self, relative: str, *, base: Path, source: str) -> Path:
        candidate = PurePath(relative)
        if candidate.is_absolute() or any(part == ".." for part in candidate.parts):
            raise ScenarioLoadError(
                f"Subroutine path must be relative without '..': {relative}",
                code="CH-1006",
                location=source,
            )
        for root in [base] + self.search_path:
            full = root / candidate
            if full.is_file():
                return full.resolve()
        raise ScenarioLoadError(f"Subroutine file not found: {relative}", code="CH-1001", location=source)


def load_scenario(path: str | Path, search_path: Sequence[str | Path] | None = None) -> ScenarioGraph:
    return ScenarioLoader(search_path).load(path)
