#!/usr/bin/env python3
from __future__ import annotations
import argparse
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
import io
import json
import logging
import os
import sys
from typing import Generator, TextIO, Tuple, TypeAlias


LOGGER = logging.getLogger(__name__)

# node id 0 is never assigned by V8, it marks "no parent"
ROOT_NODE_ID = 0

FUNCTION_CATEGORY = "function"

GC_CODE_TYPE = "other"
GC_FUNCTION_NAME = "(garbage collector)"

# chrome writes the trace as one JSON array with one element per line
FRAMING_CHARS = "[], \t\r\n"

LOG_LEVEL_ENV = "CHROME2SPALL_LOG_LEVEL"
LOGGER_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}
DEFAULT_LOG_LEVEL = "WARN"

LOGGER_CONTENT_FORMAT = (
    "%(asctime)s.%(msecs)03d(%(process)d)[%(levelname)s][%(module)s:%(lineno)d]%(message)s"
)
LOGGER_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


# See https://github.com/python/typing/issues/182#issuecomment-1320974824
JSON: TypeAlias = dict[str, "JSON"] | list["JSON"] | str | int | float | bool | None


class ConversionError(Exception):
    pass


class DecodeError(ConversionError, ValueError):
    pass


class UnknownProfileError(ConversionError, KeyError):
    def __init__(self, pid: int) -> None:
        super().__init__(pid)
        self.pid = pid

    def __str__(self) -> str:
        return f"got an event for pid {self.pid}, but we never saw a Profile event for that pid"


class EventType(Enum):
    BEGIN = "B"
    END = "E"
    SAMPLE = "P"


@dataclass(frozen=True)
class SpecialEvent:
    cat: str
    ty: EventType
    name: str


SPECIAL_EVENT_PROFILE = SpecialEvent(
    "disabled-by-default-v8.cpu_profiler", EventType.SAMPLE, "Profile"
)
SPECIAL_EVENT_PROFILE_CHUNK = SpecialEvent(
    "disabled-by-default-v8.cpu_profiler", EventType.SAMPLE, "ProfileChunk"
)


def expect_object(obj: JSON, what: str) -> dict[str, JSON]:
    if not isinstance(obj, dict):
        raise DecodeError(f"expected object for {what}, got {obj!r}")
    return obj


def expect_list(obj: JSON, what: str) -> list[JSON]:
    if not isinstance(obj, list):
        raise DecodeError(f"expected array for {what}, got {obj!r}")
    return obj


def expect_int(obj: JSON, what: str) -> int:
    # bool is a subclass of int, but `true` is not a valid id
    if isinstance(obj, bool) or not isinstance(obj, int):
        raise DecodeError(f"expected integer for {what}, got {obj!r}")
    return obj


def expect_str(obj: JSON, what: str) -> str:
    if not isinstance(obj, str):
        raise DecodeError(f"expected string for {what}, got {obj!r}")
    return obj


def expect_script_id(obj: JSON) -> int:
    # the devtools protocol spells script ids as strings, trace events as ints
    if isinstance(obj, str) and obj.isdigit():
        return int(obj)
    return expect_int(obj, "callFrame.scriptId")


@dataclass(frozen=True)
class CallFrame:
    code_type: str = ""
    function_name: str = ""
    line_number: int = 0
    column_number: int = 0
    script_id: int = 0
    url: str = ""


@dataclass(frozen=True)
class CallTreeNode:
    id: int
    parent: int = ROOT_NODE_ID
    call_frame: CallFrame = field(default_factory=CallFrame)

    @property
    def is_gc(self) -> bool:
        return (
            self.call_frame.code_type == GC_CODE_TYPE
            and self.call_frame.function_name == GC_FUNCTION_NAME
        )

    @property
    def display_name(self) -> str:
        cf = self.call_frame
        if cf.function_name:
            return cf.function_name
        return f"(anonymous {cf.script_id}:{cf.line_number}:{cf.column_number})"


def parse_call_frame(obj: JSON) -> CallFrame:
    obj = expect_object(obj, "callFrame")
    return CallFrame(
        code_type=expect_str(obj.get("codeType", ""), "callFrame.codeType"),
        function_name=expect_str(obj.get("functionName", ""), "callFrame.functionName"),
        line_number=expect_int(obj.get("lineNumber", 0), "callFrame.lineNumber"),
        column_number=expect_int(obj.get("columnNumber", 0), "callFrame.columnNumber"),
        script_id=expect_script_id(obj.get("scriptId", 0)),
        url=expect_str(obj.get("url", ""), "callFrame.url"),
    )


def parse_node(obj: JSON) -> CallTreeNode:
    obj = expect_object(obj, "node")
    return CallTreeNode(
        id=expect_int(obj.get("id"), "node.id"),
        parent=expect_int(obj.get("parent", ROOT_NODE_ID), "node.parent"),
        call_frame=parse_call_frame(obj.get("callFrame", {})),
    )


@dataclass
class TraceRecord:
    name: str
    cat: str
    ph: str
    pid: JSON
    tid: JSON
    args: JSON

    @property
    def categories(self) -> list[str]:
        return self.cat.split(",")

    def has_category(self, cat: str) -> bool:
        return cat in self.categories

    def is_special_event(self, se: SpecialEvent) -> bool:
        return self.has_category(se.cat) and self.ph == se.ty.value and self.name == se.name


def parse_record(line: str) -> TraceRecord:
    try:
        obj = json.loads(line)
    except json.JSONDecodeError as e:
        raise DecodeError(str(e)) from e
    obj = expect_object(obj, "event")

    # `ts` is left alone, real traces carry fractional microseconds there
    return TraceRecord(
        name=expect_str(obj.get("name", ""), "name"),
        cat=expect_str(obj.get("cat", ""), "cat"),
        ph=expect_str(obj.get("ph", ""), "ph"),
        pid=obj.get("pid", 0),
        tid=obj.get("tid", 0),
        args=obj.get("args", {}),
    )


@dataclass
class PassthroughLine:
    raw: str

    def to_line(self) -> str:
        return self.raw


@dataclass
class ProfileStart:
    pid: int
    tid: int
    start_time: int


@dataclass
class ProfileChunk:
    pid: int
    tid: int
    nodes: list[CallTreeNode]
    samples: list[int]
    time_deltas: list[int]


def parse_profile_start(record: TraceRecord) -> ProfileStart:
    data = expect_object(expect_object(record.args, "args").get("data", {}), "args.data")
    return ProfileStart(
        pid=expect_int(record.pid, "pid"),
        tid=expect_int(record.tid, "tid"),
        start_time=expect_int(data.get("startTime", 0), "startTime"),
    )


def parse_profile_chunk(record: TraceRecord) -> ProfileChunk:
    data = expect_object(expect_object(record.args, "args").get("data", {}), "args.data")
    cpu_profile = expect_object(data.get("cpuProfile", {}), "cpuProfile")

    nodes = [parse_node(n) for n in expect_list(cpu_profile.get("nodes", []), "nodes")]
    samples = [
        expect_int(s, "samples[]")
        for s in expect_list(cpu_profile.get("samples", []), "samples")
    ]
    time_deltas = [
        expect_int(d, "timeDeltas[]")
        for d in expect_list(data.get("timeDeltas", []), "timeDeltas")
    ]
    if len(samples) != len(time_deltas):
        raise DecodeError(
            f"got {len(samples)} samples but {len(time_deltas)} time deltas"
        )

    return ProfileChunk(
        pid=expect_int(record.pid, "pid"),
        tid=expect_int(record.tid, "tid"),
        nodes=nodes,
        samples=samples,
        time_deltas=time_deltas,
    )


@dataclass
class StackEvent:
    ty: EventType
    pid: int
    tid: int
    ts: int
    name: str | None = None

    def to_chrome(self) -> JSON:
        out: dict[str, JSON] = {}
        # ends are matched to begins by stack order, so they carry no name
        if self.ty == EventType.BEGIN:
            out["name"] = self.name
        out["cat"] = FUNCTION_CATEGORY
        out["ph"] = self.ty.value
        out["ts"] = self.ts
        out["pid"] = self.pid
        out["tid"] = self.tid
        return out

    def to_line(self) -> str:
        return json.dumps(self.to_chrome(), separators=(",", ":")) + ","


TraceItem = PassthroughLine | ProfileStart | ProfileChunk
OutputItem = PassthroughLine | StackEvent


@dataclass
class ProfileState:
    pid: int
    start_time: int
    clock: int
    # tid of the most recent chunk, used to stamp emitted events
    tid: int = 0
    nodes: dict[int, CallTreeNode] = field(default_factory=dict)
    # bottom to top; may hold duplicates because of GC frames
    stack: list[int] = field(default_factory=list)
    unknown_nodes: set[int] = field(default_factory=set)

    def merge_nodes(self, nodes: Iterable[CallTreeNode]) -> None:
        for node in nodes:
            old = self.nodes.get(node.id)
            if old is not None and old != node:
                LOGGER.warning(
                    "pid %d redefines node %d: %r replaces %r", self.pid, node.id, node, old
                )
            self.nodes[node.id] = node

    def lookup(self, node_id: int) -> CallTreeNode:
        try:
            return self.nodes[node_id]
        except KeyError:
            pass

        if node_id != ROOT_NODE_ID and node_id not in self.unknown_nodes:
            LOGGER.warning("pid %d references unknown node %d", self.pid, node_id)
            self.unknown_nodes.add(node_id)
        return CallTreeNode(id=node_id)

    def begin(self, node: CallTreeNode, name: str) -> StackEvent:
        self.stack.append(node.id)
        return StackEvent(
            ty=EventType.BEGIN, pid=self.pid, tid=self.tid, ts=self.clock, name=name
        )

    def end(self) -> StackEvent:
        self.stack.pop()
        return StackEvent(ty=EventType.END, pid=self.pid, tid=self.tid, ts=self.clock)


def last_index(stack: list[int], node_id: int) -> int:
    for i in reversed(range(len(stack))):
        if stack[i] == node_id:
            return i
    return -1


def find_ancestor(state: ProfileState, node_id: int) -> Tuple[int, list[int]]:
    """
    Find the topmost stack index to keep and the nodes to open above it.

    The nodes to open are returned leaf first. An index of -1 means the whole
    stack has to be closed.
    """
    # topmost occurrence wins, GC frames may have put duplicates below it
    ancestor_index = last_index(state.stack, node_id)
    if ancestor_index >= 0:
        return ancestor_index, []

    to_open: list[int] = []
    current_id = node_id
    while current_id != ROOT_NODE_ID:
        ancestor_index = last_index(state.stack, current_id)
        if ancestor_index >= 0:
            break
        if current_id in to_open:
            # a parent loop never reaches the root, treat the loop as the root
            LOGGER.warning(
                "pid %d: parent chain of node %d loops at node %d",
                state.pid,
                node_id,
                current_id,
            )
            break
        to_open.append(current_id)
        current_id = state.lookup(current_id).parent

    return ancestor_index, to_open


def advance(state: ProfileState, node_id: int, delta: int) -> list[StackEvent]:
    state.clock += delta

    current_top = state.stack[-1] if state.stack else ROOT_NODE_ID
    if current_top == node_id:
        # no change, keep on ticking
        return []

    node = state.lookup(node_id)
    if node.is_gc:
        # GC frames are not real callers. Push them unconditionally, the next
        # real stack change pops them.
        return [state.begin(node, node.call_frame.function_name)]

    ancestor_index, to_open = find_ancestor(state, node_id)

    events = []
    while len(state.stack) > ancestor_index + 1:
        events.append(state.end())
    for opened_id in reversed(to_open):
        opened = state.lookup(opened_id)
        events.append(state.begin(opened, opened.display_name))
    return events


class ProfileRegistry:
    """One ProfileState per pid, created by Profile events and fed by ProfileChunk events."""

    def __init__(self) -> None:
        self.profiles: dict[int, ProfileState] = {}

    def start_profile(self, pid: int, start_time: int) -> ProfileState:
        if pid in self.profiles:
            LOGGER.debug("restarting profile for pid %d", pid)
        state = ProfileState(pid=pid, start_time=start_time, clock=start_time)
        self.profiles[pid] = state
        return state

    def ingest_chunk(
        self,
        pid: int,
        tid: int,
        nodes: Iterable[CallTreeNode],
        samples: list[int],
        time_deltas: list[int],
    ) -> list[StackEvent]:
        try:
            state = self.profiles[pid]
        except KeyError:
            raise UnknownProfileError(pid) from None

        if len(samples) != len(time_deltas):
            raise DecodeError(
                f"got {len(samples)} samples but {len(time_deltas)} time deltas"
            )

        events = []
        if tid != state.tid and state.stack:
            # ends must carry the tid of their begins, so close under the old one
            LOGGER.warning(
                "pid %d moves from tid %d to tid %d with %d open frame(s)",
                pid,
                state.tid,
                tid,
                len(state.stack),
            )
            while state.stack:
                events.append(state.end())
        state.tid = tid
        state.merge_nodes(nodes)

        for node_id, delta in zip(samples, time_deltas):
            events.extend(advance(state, node_id, delta))
        return events

    def close_open_frames(self) -> list[StackEvent]:
        events = []
        for pid in sorted(self.profiles):
            state = self.profiles[pid]
            while state.stack:
                events.append(state.end())
        return events


def read_trace_lines(stream: Iterable[str]) -> Generator[str, None, None]:
    for line in stream:
        yield line.removesuffix("\n").removesuffix("\r")


def parse_trace_lines(lines: Iterable[str]) -> Generator[TraceItem, None, None]:
    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip(FRAMING_CHARS)

        # a lone `[` or `]` is framing, not a record
        if not line:
            yield PassthroughLine(raw=raw)
            continue

        try:
            record = parse_record(line)
            item: TraceItem
            if record.is_special_event(SPECIAL_EVENT_PROFILE):
                item = parse_profile_start(record)
            elif record.is_special_event(SPECIAL_EVENT_PROFILE_CHUNK):
                item = parse_profile_chunk(record)
            else:
                item = PassthroughLine(raw=raw)
        except DecodeError as e:
            LOGGER.error("line %d: error reading event: %s", lineno, e)
            continue

        yield item


def reconstruct_stacks(
    items: Iterable[TraceItem],
    registry: ProfileRegistry,
    close_open_frames: bool = False,
) -> Generator[OutputItem, None, None]:
    for item in items:
        if isinstance(item, ProfileStart):
            registry.start_profile(item.pid, item.start_time)
        elif isinstance(item, ProfileChunk):
            try:
                events = registry.ingest_chunk(
                    item.pid, item.tid, item.nodes, item.samples, item.time_deltas
                )
            except ConversionError as e:
                LOGGER.error("skipping ProfileChunk: %s", e)
                continue
            yield from events
        else:
            yield item

    if close_open_frames:
        yield from registry.close_open_frames()


def check_begin_ends(items: Iterable[OutputItem]) -> Generator[OutputItem, None, None]:
    depths: dict[Tuple[int, int], int] = {}

    for item in items:
        if isinstance(item, StackEvent):
            key = (item.pid, item.tid)
            depth = depths.get(key, 0)

            if item.ty == EventType.BEGIN:
                depth += 1
            elif item.ty == EventType.END:
                depth -= 1

            assert depth >= 0

            depths[key] = depth
        yield item


def check_timestamps(items: Iterable[OutputItem]) -> Generator[OutputItem, None, None]:
    last_ts: dict[int, int] = {}

    for item in items:
        if isinstance(item, StackEvent):
            last = last_ts.get(item.pid, item.ts)
            # V8 occasionally reports negative time deltas
            if item.ts < last:
                LOGGER.warning(
                    "pid %d: time goes backwards from %d to %d", item.pid, last, item.ts
                )
            last_ts[item.pid] = item.ts
        yield item


def convert(
    lines: Iterable[str], out: TextIO, close_open_frames: bool = False
) -> ProfileRegistry:
    registry = ProfileRegistry()

    items_it = parse_trace_lines(read_trace_lines(lines))
    out_it = reconstruct_stacks(items_it, registry, close_open_frames=close_open_frames)
    out_it = check_begin_ends(out_it)
    out_it = check_timestamps(out_it)
    for x in out_it:
        print(x.to_line(), file=out)

    return registry


def configure_logging() -> None:
    level_name = os.getenv(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL).upper()
    level = LOGGER_LEVELS.get(level_name, LOGGER_LEVELS[DEFAULT_LOG_LEVEL])
    logging.basicConfig(
        stream=sys.stderr,
        level=level,
        format=LOGGER_CONTENT_FORMAT,
        datefmt=LOGGER_TIME_FORMAT,
    )


def use_surrogateescape(stream: TextIO) -> None:
    # undecodable bytes survive as lone surrogates and are written back unchanged
    if isinstance(stream, io.TextIOWrapper):
        stream.reconfigure(errors="surrogateescape")


def open_trace(path: str) -> TextIO:
    return open(path, encoding="utf-8", errors="surrogateescape")


def silence_stdout() -> None:
    # See https://docs.python.org/3/library/signal.html#note-on-sigpipe
    try:
        fd = sys.stdout.fileno()
    except (AttributeError, io.UnsupportedOperation):
        return
    devnull = os.open(os.devnull, os.O_WRONLY)
    os.dup2(devnull, fd)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="chrome2spall",
        description="A not particularly efficient utility to convert Chrome's "
        "performance profiles into spall files.",
    )
    parser.add_argument(
        "input",
        nargs="?",
        default="-",
        metavar="myprofile.json",
        help="Chrome trace to convert, stdin if omitted",
    )
    args = parser.parse_args(argv)

    configure_logging()
    use_surrogateescape(sys.stdout)

    try:
        if args.input == "-":
            use_surrogateescape(sys.stdin)
            registry = convert(sys.stdin, sys.stdout)
        else:
            try:
                f_in = open_trace(args.input)
            except OSError as e:
                LOGGER.error("could not open file: %s", e)
                return 1

            with f_in:
                registry = convert(f_in, sys.stdout)
    except BrokenPipeError:
        LOGGER.error("output closed before the conversion finished")
        silence_stdout()
        return 1
    except OSError as e:
        LOGGER.error("reading input or writing output: %s", e)
        return 1

    LOGGER.info("converted %d profile(s)", len(registry.profiles))
    return 0


if __name__ == "__main__":
    sys.exit(main())
