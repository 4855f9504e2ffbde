import sys
import logging
from collections import deque, namedtuple
from datetime import datetime
from lxml import etree

LOGGER_NAME = 'emitor_to_csv'

INPUT_FILENAME = "example.xml"
OUTPUT_FILENAME = "wyniki.csv"
READ_CHUNK_SIZE = 1024

HEADER_LINE = '"YYYY-MM-DD","Hour","Emitor.Tags","Pkt_Value"\n'

USAGE = "Usage: python emitor_to_csv.py [input_xml] [output_csv] [log_file_path] [log_level]"

# === DOCUMENT SCHEMA ===

# Element and attribute names of the emitor measurement documents.
# "status" is both a group and a leaf: it opens a group when no group is active
# and is a measurement once inside one.

EMITOR_TAG = "emitor"
NAME_ATTR = "nazwa"
TYPE_ATTR = "typ"
POINT_ATTR = "pkt"

GROUP_TAGS = ("status", "parametr", "stezenie")
LEAF_TAGS = ("auto", "reka", "wartosc", "status", "niepewnosc", "standard")

EMITTER = "emitter"
GROUP = "group"
LEAF = "leaf"
WRAPPER = "wrapper"
UNKNOWN = "unknown"

IDLE = "idle"
IN_GROUP = "in-group"
VALUE_CAPTURED = "value-captured"

IDLE_TAG_KINDS = {EMITOR_TAG: EMITTER}
IDLE_TAG_KINDS.update((tag, GROUP) for tag in GROUP_TAGS)

IN_GROUP_TAG_KINDS = {EMITOR_TAG: EMITTER}
IN_GROUP_TAG_KINDS.update((tag, LEAF) for tag in LEAF_TAGS)

# === CAPACITY LIMITS ===

# max_field_length applies to the emitter name, every tag token and the value.
# max_tags bounds the tokens written into one record path.
# max_pending bounds the records held between two flushes (None = unbounded).

DEFAULT_LIMITS = {
    "max_field_length": 255,
    "max_tags": 16,
    "max_pending": None,
    "policy": "truncate",
}

CAPACITY_POLICIES = ("truncate", "reject")


class CapacityExceeded(ValueError):
    pass


class EmitorParseError(Exception):

    def __init__(self, message, lineno=None):
        super().__init__(message)
        self.message = message
        self.lineno = lineno

    def __str__(self):
        if not self.lineno or f"line {self.lineno}" in self.message:
            return self.message
        return f"{self.message} at line {self.lineno}"


Record = namedtuple("Record", ["captured_at", "emitter", "tags", "value"])

# === SETTING UP AND CONFIGURING LOGGER ===

def setup_logger(log_level=logging.INFO, log_file=None):
    logger = logging.getLogger(LOGGER_NAME)

    if logger.handlers:
        logger.handlers.clear()

    logger.setLevel(log_level)

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger

# === CLASSIFYING TAGS ===

# Table-driven dispatch: the active table depends on whether a group is open.
# Names missing from the table are UNKNOWN; the tracker turns those into
# path wrappers when inside a group and ignores them otherwise.

def classify_tag(name, in_group=False):
    table = IN_GROUP_TAG_KINDS if in_group else IDLE_TAG_KINDS
    return table.get(name, UNKNOWN)

# === FINDING ATTRIBUTES ===

# Attributes arrive either as a mapping or as (key, value) pairs in source order,
# possibly repeated. By default the first match wins; last=True keeps scanning
# and returns the final occurrence.

def find_attribute(attributes, key, last=False):
    if hasattr(attributes, "items"):
        attributes = attributes.items()

    found = None
    for attr_name, attr_value in attributes:
        if attr_name == key:
            if not last:
                return attr_value
            found = attr_value
    return found

# === FORMATTING RECORDS ===

# Produces one CSV line per record: date, hour, dotted path, value.
# Every field is wrapped in double quotes; embedded quotes and commas are not escaped.

def build_tag_path(emitter, tags):
    return emitter + "".join(f".{tag}" for tag in tags)


def format_record(record):
    ts = record.captured_at
    path = build_tag_path(record.emitter, record.tags)
    return f'"{ts.year}-{ts.month:02d}-{ts.day:02d}","{ts.hour}","{path}","{record.value}"\n'

# === APPLYING CAPACITY LIMITS ===

# Validates a limits dict against DEFAULT_LIMITS and the known policies.
# apply_record_limits returns the record unchanged when it fits, a clipped copy
# under the "truncate" policy, and raises CapacityExceeded under "reject".

def resolve_limits(limits=None):
    resolved = dict(DEFAULT_LIMITS)
    if limits:
        unknown = set(limits) - set(DEFAULT_LIMITS)
        if unknown:
            raise ValueError(f"Unknown limit(s): {', '.join(sorted(unknown))}")
        resolved.update(limits)

    if resolved["policy"] not in CAPACITY_POLICIES:
        raise ValueError(f"Unknown capacity policy: {resolved['policy']!r}")

    return resolved


def apply_record_limits(record, limits):
    max_length = limits["max_field_length"]
    max_tags = limits["max_tags"]

    problems = []
    if max_tags is not None and len(record.tags) > max_tags:
        problems.append(f"{len(record.tags)} tags (limit {max_tags})")

    if max_length is not None:
        for field in (record.emitter, record.value) + tuple(record.tags):
            if len(field) > max_length:
                problems.append(f"field '{field[:20]}...' is {len(field)} characters (limit {max_length})")

    if not problems:
        return record

    if limits["policy"] == "reject":
        raise CapacityExceeded("; ".join(problems))

    tags = record.tags if max_tags is None else record.tags[:max_tags]
    if max_length is not None:
        return record._replace(
            emitter=record.emitter[:max_length],
            tags=tuple(tag[:max_length] for tag in tags),
            value=record.value[:max_length],
        )
    return record._replace(tags=tuple(tags))

# === RECORD BUFFER ===

# FIFO of formatted lines, appended during a feed cycle and drained after it.

class RecordBuffer:

    def __init__(self, max_pending=None):
        self.max_pending = max_pending
        self._lines = deque()

    def __len__(self):
        return len(self._lines)

    def append(self, line):
        if self.max_pending is not None and len(self._lines) >= self.max_pending:
            raise CapacityExceeded(f"{len(self._lines)} records pending (limit {self.max_pending})")
        self._lines.append(line)

    def drain(self):
        lines = list(self._lines)
        self._lines.clear()
        return lines

# === TRACKING ELEMENT CONTEXT ===

# Event-driven state machine fed by a SAX-style parser.
# Keeps the current emitter name, the tag stack from the active group down to the
# current element, and the pending point value.
#
# Every opened element gets a frame (kind, tokens pushed) so that its close event
# removes exactly what its open added:
#   emitor              -> 0 tokens, sets the emitter name
#   group (idle)        -> 1 token, or 2 when it carries a "typ"
#   leaf (in group)     -> 1 token, emits a record immediately
#   other (in group)    -> 1 token, path wrapper, no record
#   other (idle)        -> 0 tokens
# Closing a typed group therefore releases both the group token and its type token,
# whether or not a leaf was emitted inside it. A close with no open frame is a no-op.
#
# The tracker doubles as an lxml parser target through start/end/close.

class EmitorTracker:

    def __init__(self, limits=None, clock=None, logger=None):
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.limits = resolve_limits(limits)
        self.clock = clock or datetime.now
        self.records = RecordBuffer(self.limits["max_pending"])

        self.emitter = ""
        self.tags = []
        self.value = ""
        self._frames = []

        self.stats = {"records": 0, "truncated": 0, "rejected": 0, "dropped": 0}

    @property
    def depth(self):
        return len(self.tags)

    @property
    def state(self):
        if not self.tags:
            return IDLE
        if any(kind == LEAF for kind, _ in self._frames):
            return VALUE_CAPTURED
        return IN_GROUP

    def element_opened(self, name, attributes=()):
        kind = classify_tag(name, in_group=bool(self.tags))

        if kind == EMITTER:
            emitter = find_attribute(attributes, NAME_ATTR, last=True)
            if emitter is not None:
                self.emitter = emitter
                self.logger.debug(f"Emitor: {emitter}")
            self._frames.append((EMITTER, 0))

        elif kind == GROUP:
            self.tags = [name]
            group_type = find_attribute(attributes, TYPE_ATTR)
            if group_type is not None:
                self.tags.append(group_type)
            self._frames.append((GROUP, len(self.tags)))

        elif kind == LEAF:
            self.tags.append(name)
            self._frames.append((LEAF, 1))

            point = find_attribute(attributes, POINT_ATTR)
            if point is None:
                self.logger.debug(f"<{name}> has no '{POINT_ATTR}' attribute, reusing value '{self.value}'")
            else:
                self.value = point
            self._emit()

        elif self.tags:
            self.tags.append(name)
            self._frames.append((WRAPPER, 1))

        else:
            self._frames.append((UNKNOWN, 0))

    def element_closed(self, name=None):
        if not self._frames:
            return

        _, pushed = self._frames.pop()
        for _ in range(pushed):
            self.tags.pop()

    def _emit(self):
        record = Record(self.clock(), self.emitter, tuple(self.tags), self.value)
        path = build_tag_path(record.emitter, record.tags)

        try:
            limited = apply_record_limits(record, self.limits)
        except CapacityExceeded as e:
            self.stats["rejected"] += 1
            self.logger.warning(f"Rejected record {path}: {e}")
            return None

        if limited is not record:
            self.stats["truncated"] += 1
            self.logger.warning(f"Truncated record {path} to {build_tag_path(limited.emitter, limited.tags)}")

        try:
            self.records.append(format_record(limited))
        except CapacityExceeded as e:
            self.stats["dropped"] += 1
            self.logger.warning(f"Dropped record {path}: {e}")
            return None

        self.stats["records"] += 1
        return limited

    # lxml target interface

    def start(self, tag, attrib):
        self.element_opened(tag, attrib)

    def end(self, tag):
        self.element_closed(tag)

    def close(self):
        return dict(self.stats, depth=self.depth)

# === STREAMING THE DOCUMENT ===

# Reads the source in fixed-size chunks and hands each one to lxml's feed parser,
# which calls back into the tracker. After every chunk the pending records are
# drained to all sinks in document order, so memory is bounded by the records of
# one chunk rather than by the document.

def flush_records(buffer, sinks):
    lines = buffer.drain()
    for line in lines:
        for sink in sinks:
            sink(line)
    return len(lines)


def _parse_error(error):
    lineno = getattr(error, "lineno", None)
    message = getattr(error, "msg", None) or str(error)
    return EmitorParseError(message, lineno)


def convert_emitor_stream(source, sinks, chunk_size=READ_CHUNK_SIZE, limits=None, clock=None, logger=None):

    logger = logger or logging.getLogger(LOGGER_NAME)

    tracker = EmitorTracker(limits=limits, clock=clock, logger=logger)
    parser = etree.XMLParser(target=tracker, resolve_entities=False, no_network=True)

    chunks = 0
    while True:
        chunk = source.read(chunk_size)
        if not chunk:
            break
        chunks += 1

        try:
            parser.feed(chunk)
        except etree.XMLSyntaxError as e:
            error = _parse_error(e)
            logger.error(f"Parse error: {error}")
            raise error from e

        flushed = flush_records(tracker.records, sinks)
        logger.debug(f"Chunk {chunks}: {len(chunk)} bytes, {flushed} records flushed")

    # an empty source is an empty document: header only, no records
    if not chunks:
        logger.warning("Input is empty, no records written")
        summary = tracker.close()
        summary["chunks"] = 0
        return summary

    try:
        summary = parser.close()
    except etree.XMLSyntaxError as e:
        error = _parse_error(e)
        logger.error(f"Parse error: {error}")
        raise error from e

    flush_records(tracker.records, sinks)

    summary["chunks"] = chunks
    logger.info(f"Parsed {chunks} chunks, {summary['records']} records "
                f"({summary['truncated']} truncated, {summary['rejected']} rejected, {summary['dropped']} dropped)")
    return summary

# === CONVERTING FILES ===

# Writes the header line and then every record to the output file, echoing both to
# the console when requested. Input is read in binary so the parser sees the
# document's own encoding declaration.

def convert_emitor_file(input_path=INPUT_FILENAME, output_path=OUTPUT_FILENAME, echo=True,
                        limits=None, clock=None, logger=None):

    logger = logger or logging.getLogger(LOGGER_NAME)

    logger.info(f"Loading file: {input_path}")
    with open(input_path, 'rb') as source:
        with open(output_path, 'w', newline='', encoding='utf-8') as output:
            sinks = [output.write]
            if echo:
                sinks.append(sys.stdout.write)

            for sink in sinks:
                sink(HEADER_LINE)

            summary = convert_emitor_stream(source, sinks, limits=limits, clock=clock, logger=logger)

    logger.info(f"CSV data successfully written to {output_path}")
    return summary


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv

    if argv and argv[0] in ("-h", "--help"):
        print(USAGE)
        return 0

    input_path = argv[0] if len(argv) > 0 else INPUT_FILENAME
    output_path = argv[1] if len(argv) > 1 else OUTPUT_FILENAME

    log_file = argv[2] if len(argv) > 2 else None
    log_level_arg = argv[3].upper() if len(argv) > 3 else "INFO"
    log_level = getattr(logging, log_level_arg, logging.INFO)
    logger = setup_logger(log_level, log_file)
    logger.info(f"Starting emitor conversion on: {input_path}")

    try:
        convert_emitor_file(input_path, output_path, logger=logger)
    except EmitorParseError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        logger.error(f"I/O error: {str(e)}")
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
