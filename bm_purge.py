#
# bm-purge
#
# Decides which backup-manager archives are outdated for a given retention period.
#
# Licensed under the MIT License. See LICENSE file in the project root for license information.
#

import argparse
import io
import os
import re
import sys
import traceback
from collections import defaultdict
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import IntEnum
from types import SimpleNamespace
from typing import Callable, NoReturn, Optional, TextIO, Union, no_type_check


VERSION: str = "dev-1.0.0"

SCRIPT_START = datetime.now()

E_USAGE: int = 10
E_INTERNAL: int = 20

ENV_ARCHIVE_PREFIX: str = "BM_ARCHIVE_PREFIX"
ENV_STRICT_PURGE: str = "BM_ARCHIVE_STRICTPURGE"

DATE_FORMAT: str = "%Y%m%d"
MD5_FILE_TYPE: str = "md5"
MASTER_MARKER: str = "master."


class UsageError(Exception):
    pass


class IntegrityCheckFailedError(Exception):
    pass


class ConfigNamespace(SimpleNamespace):
    pass


class LogLevel(IntEnum):
    ERROR = 0
    WARN = 1
    INFO = 2
    DEBUG = 3

    @classmethod
    def from_name_or_number(cls, prefix: str) -> "LogLevel":
        try:
            return next(m for m in cls if m.name.startswith(prefix.upper()))
        except StopIteration:
            try:
                return cls(int(prefix))
            except ValueError:
                raise ValueError("Invalid log level: " + prefix)


class Logger:
    _level: LogLevel
    _decisions: dict[str, list[tuple[str, Optional[str]]]]

    def __init__(self, level: LogLevel = LogLevel.ERROR) -> None:
        self._level = level
        self._decisions = defaultdict(list)

    def has_log_level(self, level: LogLevel) -> bool:
        return level <= int(self._level)

    def _raw_verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        print(f"[{prefix or LogLevel(level).name}] {message}", file=file or sys.stderr)

    def verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        if self.has_log_level(level):
            self._raw_verbose(level, message, file, prefix)

    def add_decision(self, level: LogLevel, path: str, message: str, debug: Optional[str] = None) -> None:
        if not self.has_log_level(level):
            return
        if self.has_log_level(LogLevel.DEBUG):  # Full history (newest first) only with debug log level
            self._decisions[path].insert(0, (message, debug))
        else:
            self._decisions[path][:] = [(message, None)]

    def decision(self, path: str) -> Optional[str]:
        decisions = self._decisions.get(path)
        return decisions[0][0] if decisions else None

    def _format_decision(self, decision: tuple[str, Optional[str]]) -> str:
        message, debug = decision
        return message + (f" ({debug})" if debug is not None else "")

    def print_decisions(self) -> None:
        if not self._decisions:
            return
        longest_name_length = max(len(p) for p in self._decisions)
        for path in sorted(self._decisions):
            decisions = self._decisions[path]
            if not decisions:
                continue
            self._raw_verbose(LogLevel.INFO, f"{path:<{longest_name_length}}: {self._format_decision(decisions[0])}")
            if not self.has_log_level(LogLevel.DEBUG):
                continue
            for idx, decision in enumerate(decisions[1:]):
                self._raw_verbose(LogLevel.DEBUG, f"{' ' * ((longest_name_length + 2) + idx * 4)}└── {self._format_decision(decision)}")


# Archive names


@dataclass(frozen=True)
class ArchiveRecord:
    prefix: str
    name: str
    date: str
    is_master: bool
    file_type: str

    def describe(self) -> str:
        return f"set: '{self.name}', date: {self.date}, {'master' if self.is_master else 'incremental'}, type: {self.file_type}"


@dataclass(frozen=True)
class Recognized:
    record: ArchiveRecord


@dataclass(frozen=True)
class Unrecognized:
    filename: str


ParseResult = Union[Recognized, Unrecognized]

GENERIC_PATTERN = re.compile(r"([^-]+)-(\S+)\.(\d{8})\.(\S+)")
MD5_ONLY_PATTERN = re.compile(r"([^-]+)-(\d{8})\.md5")


class NameParser:
    """Turns archive file names into ArchiveRecords.

    Three naming patterns are tried in order and the first match wins:

    1. ``<prefix>[-<name>][.]<date>.[master.]<filetype>`` with the configured prefix
    2. ``<prefix>-<name>.<date>.<suffix>`` with any hyphen-free prefix
    3. ``<prefix>-<date>.md5`` (checksum files)

    Anything else is returned as Unrecognized.
    """

    archive_prefix: str
    _matchers: list[Callable[[str], Optional[ArchiveRecord]]]

    def __init__(self, archive_prefix: str = "") -> None:
        self.archive_prefix = archive_prefix
        self._matchers = [self._match_generic, self._match_md5_only]
        if archive_prefix:  # An empty prefix would match almost anything
            self._prefix_pattern = re.compile(rf"{re.escape(archive_prefix)}(?:-(\S+?))?\.?(\d{{8}})\.({re.escape(MASTER_MARKER)})?(\S+)")
            self._matchers.insert(0, self._match_configured_prefix)

    def _match_configured_prefix(self, filename: str) -> Optional[ArchiveRecord]:
        re_match = self._prefix_pattern.fullmatch(filename)
        if not re_match:
            return None
        name, date, master, file_type = re_match.groups()
        if name is None:
            name = f"{self.archive_prefix}-{MD5_FILE_TYPE}" if file_type == MD5_FILE_TYPE else ""
        return ArchiveRecord(self.archive_prefix, name, date, master is not None, file_type)

    def _match_generic(self, filename: str) -> Optional[ArchiveRecord]:
        re_match = GENERIC_PATTERN.fullmatch(filename)
        if not re_match:
            return None
        prefix, name, date, suffix = re_match.groups()
        if suffix.startswith(MASTER_MARKER):
            return ArchiveRecord(prefix, name, date, True, suffix[len(MASTER_MARKER) :])
        return ArchiveRecord(prefix, name, date, False, suffix[1:] if suffix.startswith(".") else suffix)

    def _match_md5_only(self, filename: str) -> Optional[ArchiveRecord]:
        re_match = MD5_ONLY_PATTERN.fullmatch(filename)
        if not re_match:
            return None
        prefix, date = re_match.groups()
        return ArchiveRecord(prefix, f"{prefix}-{MD5_FILE_TYPE}", date, False, MD5_FILE_TYPE)

    def parse(self, path: str) -> ParseResult:
        filename = os.path.basename(path.strip())
        for matcher in self._matchers:
            record = matcher(filename)
            if record is not None:
                return Recognized(record)
        return Unrecognized(filename)


# Catalog


@dataclass
class Catalog:
    by_path: dict[str, ArchiveRecord] = field(default_factory=dict)
    master_dates_by_name: dict[str, dict[str, str]] = field(default_factory=lambda: defaultdict(dict))
    all_dates_by_name: dict[str, dict[str, str]] = field(default_factory=lambda: defaultdict(dict))
    paths: list[str] = field(default_factory=list)
    unrecognized: list[str] = field(default_factory=list)
    lines_read: int = 0

    def add(self, path: str, record: ArchiveRecord) -> None:
        self.by_path[path] = record
        if record.is_master:
            self.master_dates_by_name[record.name][record.date] = path
        self.all_dates_by_name[record.name][record.date] = path
        self.paths.append(path)


def build_catalog(lines: Iterable[str], name_parser: NameParser, logger: Logger) -> Catalog:
    catalog = Catalog()
    for line_number, line in enumerate(lines, start=1):
        catalog.lines_read += 1
        tokens = line.split()
        if not tokens:
            logger.verbose(LogLevel.DEBUG, f"Line {line_number}: blank, ignored")
            continue
        path = tokens[0]
        if len(tokens) > 1:
            logger.verbose(LogLevel.WARN, f"Line {line_number}: only the first token is used: '{path}'")

        result = name_parser.parse(path)
        if isinstance(result, Unrecognized):
            logger.verbose(LogLevel.DEBUG, f"Line {line_number}: unrecognized archive name '{path}', ignored")
            catalog.unrecognized.append(path)
            continue

        logger.verbose(LogLevel.DEBUG, f"Line {line_number}: {path} => {result.record.describe()}")
        catalog.add(path, result.record)

    if logger.has_log_level(LogLevel.DEBUG):
        for name, dates in sorted(catalog.all_dates_by_name.items()):
            masters = catalog.master_dates_by_name.get(name, {})
            logger.verbose(LogLevel.DEBUG, f"Archive set '{name}': " + ", ".join(f"{date}{' (master)' if date in masters else ''}" for date in sorted(dates)))
    return catalog


# Retention


def compute_cutoff_date(ttl_days: int, now: Optional[datetime] = None) -> str:
    return ((now or SCRIPT_START) - timedelta(days=ttl_days)).strftime(DATE_FORMAT)


class RetentionEngine:
    _catalog: Catalog
    _cutoff_date: str
    _strict_purge: bool
    _archive_prefix: str
    _logger: Logger
    _outdated: set[str]

    def __init__(self, catalog: Catalog, cutoff_date: str, strict_purge: bool, archive_prefix: str, logger: Logger) -> None:
        self._catalog = catalog
        self._cutoff_date = cutoff_date
        self._strict_purge = strict_purge
        self._archive_prefix = archive_prefix
        self._logger = logger
        self._outdated = set()

    def _record(self, path: str) -> ArchiveRecord:
        try:
            return self._catalog.by_path[path]
        except KeyError:
            raise IntegrityCheckFailedError(f"Archive '{path}' is not in the catalog!!")

    def _master_dates(self, record: ArchiveRecord) -> Mapping[str, str]:
        return self._catalog.master_dates_by_name.get(record.name, {})

    def _outdate(self, path: str, message: str, debug: Optional[str] = None) -> None:
        self._outdated.add(path)
        self._logger.add_decision(LogLevel.INFO, path, message, debug)

    def _keep(self, path: str, message: str, debug: Optional[str] = None) -> None:
        self._logger.add_decision(LogLevel.INFO, path, message, debug)

    def _process_masters(self, paths: list[str]) -> None:
        for path in paths:
            record = self._record(path)
            if not record.is_master:
                continue
            if record.date > self._cutoff_date:
                self._keep(path, "Keeping: younger than cutoff", debug=record.describe())
                continue
            youngest_master = max(self._master_dates(record), default=record.date)
            if youngest_master > record.date:
                self._outdate(path, f"Outdated: younger master {youngest_master} exists", debug=record.describe())
            else:
                self._keep(path, "Keeping: newest master of its set", debug=record.describe())

    def _process_incrementals(self, paths: list[str]) -> None:
        for path in paths:
            record = self._record(path)
            if record.is_master:
                continue
            if record.date > self._cutoff_date:
                self._keep(path, "Keeping: younger than cutoff", debug=record.describe())
                continue
            surviving_master = max((date for date, master_path in self._master_dates(record).items() if date < record.date and master_path not in self._outdated), default=None)
            if surviving_master is not None:
                self._keep(path, f"Keeping: depends on retained master {surviving_master}", debug=record.describe())
            elif self._strict_purge and record.prefix != self._archive_prefix:
                self._keep(path, f"Keeping: strict purge protects prefix '{record.prefix}'", debug=record.describe())
            else:
                self._outdate(path, "Outdated: older than cutoff without a retained master", debug=record.describe())

    def _check_integrity(self) -> None:
        for path in self._outdated:
            if self._record(path).date > self._cutoff_date:
                raise IntegrityCheckFailedError(f"Archive '{path}' is younger than the cutoff but marked as outdated!!")

    def process(self, paths: Optional[list[str]]) -> list[str]:
        if paths is None:
            raise IntegrityCheckFailedError("No list of archives given!!")
        unique_paths = sorted(set(paths))  # Duplicates are visited once
        self._logger.verbose(LogLevel.DEBUG, f"Cutoff date: {self._cutoff_date}, strict purge: {self._strict_purge}, prefix: '{self._archive_prefix}'")
        self._process_masters(unique_paths)
        self._process_incrementals(unique_paths)
        self._check_integrity()
        return sorted(self._outdated)


def outdate(paths: Optional[list[str]], catalog: Catalog, cutoff_date: str, strict_purge: bool, archive_prefix: str, logger: Optional[Logger] = None) -> list[str]:
    return RetentionEngine(catalog, cutoff_date, strict_purge, archive_prefix, logger or Logger()).process(paths)


# Command line


class ModernHelpFormatter(argparse.HelpFormatter):
    @no_type_check
    def __init__(self, *a, **kw) -> None:  # noqa: ANN002, ANN003
        super().__init__(*a, max_help_position=30, width=160, **kw)

    @no_type_check
    def start_section(self, heading) -> None:  # noqa: ANN001
        super().start_section(heading.capitalize())


class ModernStrictArgumentParser(argparse.ArgumentParser):
    @no_type_check
    def __init__(self, *a, **kw) -> None:  # noqa: ANN002, ANN003
        super().__init__(*a, **kw)
        self._errors: list[str] = []

    def add_error(self, msg: str) -> None:
        if msg not in self._errors:
            self._errors.append(msg)

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        print("\nError(s):", file=sys.stderr)
        for line in message.split("\n"):
            print(f"  • {line}", file=sys.stderr)
        print("\nHint: Try '--help' for more information.", file=sys.stderr)
        sys.exit(E_USAGE)

    # Argument type helpers
    def non_negative_int_argument(self, value: str) -> int:
        try:
            int_value = int(value)
            if int_value < 0:
                raise ValueError
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid value '{value}': must be an integer >= 0")
        return int_value

    def verbose_argument(self, value: str) -> LogLevel:
        try:
            return LogLevel.from_name_or_number(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid verbose value '{value}' (use ERROR, WARN, INFO, DEBUG or 0, 1, 2, 3)")

    # Internal helper methods
    def _suggest(self, argument: str) -> list[str]:
        opts = [o for a in self._actions for o in a.option_strings if o.startswith("--")]
        cand = [o for o in opts if abs(len(o) - len(argument)) <= 2 and sum(a != b for a, b in zip(o, argument)) <= 2]
        return cand[:1]

    @no_type_check
    def _collect_raw_args(self, args):  # noqa: ANN202, ANN001
        if args is not None:
            return list(args)
        return sys.argv[1:]  # default argparse behavior

    @no_type_check
    def _detect_duplicate_flags(self, raw_args) -> None:  # noqa: ANN001
        alias = {opt: action.option_strings[0] for action in self._actions for opt in action.option_strings}
        seen = set()

        for tok in raw_args:
            if not tok.startswith("-") or tok == "-":  # '-' is stdin
                continue

            # Extract option (handles -t3, -t=3, --ttl=5)
            opt = tok.split("=", 1)[0]
            if len(opt) > 2 and opt.startswith("-") and not opt.startswith("--"):
                opt = opt[:2]

            key = alias.get(opt, opt)

            if key in seen:
                self.add_error(f"Duplicate flag: {key}")
            seen.add(key)

    @no_type_check
    def _validate_arguments(self, ns) -> None:  # noqa: ANN001
        if ns.verbose is None:
            ns.verbose = LogLevel.ERROR

        # normalize 0-byte separator
        if ns.separator == "\\0":
            ns.separator = "\0"

        if ns.file == "-":
            ns.file = None

    # Main hook
    @no_type_check
    def parse_known_args(self, args=None, namespace=None) -> tuple[argparse.Namespace, list[str]]:  # noqa: ANN001
        self._errors = []
        raw_args = self._collect_raw_args(args)
        self._detect_duplicate_flags(raw_args)

        ns, unknown = super().parse_known_args(raw_args, namespace or argparse.Namespace())

        if unknown:
            sug = self._suggest(unknown[0])
            if sug:
                self.add_error(f"Unknown option: {unknown[0]} (did you mean {sug[0]}?)")
            else:
                self.add_error(f"Unknown option: {unknown[0]}")

        self._validate_arguments(ns)

        if self._errors:
            msg = "\n".join(f"{e}" for e in self._errors)
            self.error(msg)

        return ns, unknown


def strict_purge_from_env(environ: Mapping[str, str]) -> bool:
    return environ.get(ENV_STRICT_PURGE) == "true"


def create_parser(environ: Optional[Mapping[str, str]] = None) -> ModernStrictArgumentParser:
    environ = os.environ if environ is None else environ
    parser: ModernStrictArgumentParser = ModernStrictArgumentParser(
        description=f"bm-purge {VERSION}\n\nPrints the backup-manager archives that are outdated for a retention period",
        usage="bm-purge --ttl N [file] [options]\n\nExample:\n  ls /var/archives | bm-purge --ttl 7 --prefix $(hostname)",
        epilog=f"Archive prefix and strict purge default to ${ENV_ARCHIVE_PREFIX} and ${ENV_STRICT_PURGE} ('true' enables it).",
        formatter_class=ModernHelpFormatter,
        add_help=False,
    )

    g_main = parser.add_argument_group("Main arguments")
    g_policy = parser.add_argument_group("Policy arguments")
    g_behavior = parser.add_argument_group("Behavior arguments")
    g_common = parser.add_argument_group("Common arguments")

    g_main.add_argument("file", nargs="?", default=None, help="File listing one archive per line (default: standard input, also with '-')")
    g_main.add_argument("--ttl", "-t", type=parser.non_negative_int_argument, required=True, metavar="N", help="Retention period in days")

    g_policy.add_argument("--prefix", "-p", dest="archive_prefix", default=environ.get(ENV_ARCHIVE_PREFIX, ""), metavar="P", help=f"Archive prefix (default: ${ENV_ARCHIVE_PREFIX})")
    # fmt: off
    g_policy.add_argument("--strict-purge", "-s", action="store_true", default=strict_purge_from_env(environ),
        help=f"Only purge incremental archives using the archive prefix (default: enabled if ${ENV_STRICT_PURGE} is 'true')")

    g_behavior.add_argument("--separator", default="\n", metavar="sep", help="Separator for the printed archives (default: newline; '\\0' for NUL)")
    g_behavior.add_argument("--null", "-0", action="store_const", dest="separator", const="\0", help="Separate the printed archives by NUL")
    g_behavior.add_argument("--verbose", "-V", "-v", type=parser.verbose_argument, default=None, nargs="?", const=LogLevel.INFO, metavar="lev",
        help="Verbosity level on stderr: 0 = error, 1 = warn, 2 = info, 3 = debug (default: 'info', if specified without value; 'error' otherwise)")
    # fmt: on

    g_common.add_argument("--version", "-R", action="version", version=f"%(prog)s {VERSION}")
    g_common.add_argument("--help", "-h", action="help", help="Show this help message and exit")
    g_common.add_argument("--stacktrace", action="store_true", help=argparse.SUPPRESS)

    return parser


def parse_arguments(argv: Optional[list[str]] = None, environ: Optional[Mapping[str, str]] = None) -> ConfigNamespace:
    parser = create_parser(environ)
    args = parser.parse_args(argv)
    return ConfigNamespace(**vars(args))


def read_lines(file: Optional[str]) -> Iterator[str]:
    if file is None:
        stdin = sys.stdin
        if hasattr(stdin, "buffer"):
            stdin = io.TextIOWrapper(stdin.buffer, encoding="utf-8", errors="surrogateescape")
        yield from stdin
        return
    try:
        with open(file, encoding="utf-8", errors="surrogateescape") as stream:
            yield from stream
    except OSError as e:
        raise UsageError(f"Cannot read archive list '{file}': {e.strerror or e}") from e


def write_outdated(paths: list[str], separator: str, stream: Optional[TextIO] = None) -> None:
    stream = stream or sys.stdout
    stream.flush()
    for path in paths:  # Undecodable bytes of the input are written back unchanged
        stream.buffer.write(f"{path}{separator}".encode("utf-8", "surrogateescape"))
    stream.buffer.flush()


def handle_exception(exception: Exception, exit_code: int, stacktrace: bool, prefix: str = "") -> None:
    if stacktrace:
        traceback.print_exc()
    print(f"[{prefix or LogLevel.ERROR.name}] {exception}", file=sys.stderr)
    sys.exit(exit_code)


def main(argv: Optional[list[str]] = None) -> None:
    args: Optional[ConfigNamespace] = None

    try:
        args = parse_arguments(argv)
        logger = Logger(args.verbose)

        logger.verbose(LogLevel.DEBUG, f"Parsed arguments: {args}")

        cutoff_date = compute_cutoff_date(args.ttl)
        logger.verbose(LogLevel.INFO, f"Cutoff date: {cutoff_date} (ttl: {args.ttl} days)")

        catalog = build_catalog(read_lines(args.file), NameParser(args.archive_prefix), logger)
        outdated = outdate(catalog.paths, catalog, cutoff_date, args.strict_purge, args.archive_prefix, logger)

        logger.print_decisions()

        logger.verbose(LogLevel.INFO, f"Total lines read:          {catalog.lines_read:03d}")
        logger.verbose(LogLevel.INFO, f"Total archives recognized: {len(catalog.by_path):03d}")
        logger.verbose(LogLevel.INFO, f"Total names unrecognized:  {len(catalog.unrecognized):03d}")
        logger.verbose(LogLevel.INFO, f"Total archives outdated:   {len(outdated):03d}")
        logger.verbose(LogLevel.INFO, f"Total archives kept:       {len(catalog.by_path) - len(outdated):03d}")

        write_outdated(outdated, args.separator)

    except UsageError as e:
        handle_exception(e, E_USAGE, args.stacktrace if args is not None else True)
    except IntegrityCheckFailedError as e:
        handle_exception(e, E_INTERNAL, args.stacktrace if args is not None else True)
    except Exception as e:
        handle_exception(e, E_INTERNAL, args.stacktrace if args is not None else True, prefix="UNEXPECTED ERROR")


if __name__ == "__main__":
    main()
