#!/usr/bin/env python3
"""
Pass-running C Preprocessor Driver (passcpp)

Stands in for a C preprocessor. The real preprocessor is run into a temporary
file, the preprocessed text is handed to an ordered list of transformation
passes, and the result is written where the caller asked for it.
"""

import os
import re
import sys
import time
import shlex
import importlib
import importlib.util
import subprocess
import tempfile
from typing import List, Tuple, Optional, Dict, Callable, Iterator, Sequence
from enum import Enum, auto
from dataclasses import dataclass
import clang.cindex


# =============================================================================
# Errors
# =============================================================================

class DriverError(Exception):
    """An expected failure that stops the driver before any output is written."""
    stage = 'driver'


class MalformedArgumentsError(DriverError):
    stage = 'arguments'


class UnresolvedLanguageError(DriverError):
    stage = 'language'


class DelegateError(DriverError):
    stage = 'cpp'

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class PluginError(DriverError):
    stage = 'plugin'


class UnknownPassError(DriverError):
    stage = 'pass'


class ParseError(DriverError):
    stage = 'parse'


class PassError(DriverError):
    stage = 'pass'

    def __init__(self, pass_name: str, message: str):
        super().__init__(message)
        self.pass_name = pass_name


class ConsistencyError(DriverError):
    stage = 'check'

    def __init__(self, pass_name: str, message: str):
        super().__init__(message)
        self.pass_name = pass_name


# =============================================================================
# Diagnostics and configuration
# =============================================================================

class Reporter:
    """Writes driver diagnostics to stderr and remembers whether any were errors."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.warnings = 0
        self.errors = 0

    @property
    def had_errors(self) -> bool:
        return self.errors > 0

    def log(self, message: str):
        if self.verbose:
            print(f"[passcpp] {message}", file=sys.stderr)

    def warning(self, message: str):
        self.warnings += 1
        print(f"passcpp: warning: {message}", file=sys.stderr)

    def error(self, message: str):
        self.errors += 1
        print(f"passcpp: error: {message}", file=sys.stderr)


def _env_flag(environ, name: str) -> bool:
    raw = environ.get(name, '').strip().lower()
    return raw not in ('', '0', 'false', 'no', 'off')


@dataclass(frozen=True)
class DriverConfig:
    """Behaviour switches that are not part of the preprocessor command line."""
    verbose: bool = False
    check: bool = False
    strict: bool = False
    stats: bool = False
    real_cpp: Optional[str] = None
    temp_dir: Optional[str] = None

    @classmethod
    def from_env(cls, environ=None) -> 'DriverConfig':
        environ = os.environ if environ is None else environ
        return cls(
            verbose=_env_flag(environ, 'PASSCPP_VERBOSE'),
            check=_env_flag(environ, 'PASSCPP_CHECK'),
            strict=_env_flag(environ, 'PASSCPP_STRICT'),
            stats=_env_flag(environ, 'PASSCPP_STATS'),
            real_cpp=environ.get('PASSCPP_REALCPP') or None,
            temp_dir=environ.get('PASSCPP_TMPDIR') or None,
        )


# =============================================================================
# Argument scanning and classification
# =============================================================================

# Options whose value may follow as a separate argument.
OPTIONS_WITH_SEPARATE_VALUE = frozenset((
    '-o', '-I', '-D', '-U', '-include', '-imacros', '-isystem', '-idirafter',
    '-iquote', '-iprefix', '-iwithprefix', '-MF', '-MT', '-MQ', '-x',
    '-Xpreprocessor',
))

PASS_OPTION_PREFIX = '-fpass-'


@dataclass(frozen=True)
class BasicInvocationInfo:
    """What the command line says about the invocation as a whole."""
    driver_name: str
    output_file: Optional[str] = None
    minus_o_pos: Optional[int] = None
    suppress_ppout: bool = False
    language: Optional[str] = None
    std: Optional[str] = None


def scan_and_chunk(argv: Sequence[str]) -> Tuple[List[List[str]], BasicInvocationInfo]:
    """Group a preprocessor command line into chunks.

    The result has exactly one chunk per argument. When an option and its
    value travel together, the option's own position holds an empty chunk and
    the value's position holds [option, value].

    Args:
        argv: Full command line, including the program name

    Returns:
        (chunks, BasicInvocationInfo)
    """
    if not argv:
        raise MalformedArgumentsError("empty command line")

    chunks: List[List[str]] = [[argv[0]]]
    output_file = None
    minus_o_pos = None
    suppress_ppout = False
    language = None
    std = None
    operands_only = False

    i = 1
    while i < len(argv):
        arg = argv[i]

        if operands_only or arg == '--':
            operands_only = True
            chunks.append([arg])
            i += 1
            continue

        if arg in OPTIONS_WITH_SEPARATE_VALUE and i + 1 < len(argv):
            value = argv[i + 1]
            if arg == '-o':
                output_file = value
                minus_o_pos = i + 1
            elif arg == '-x':
                language = None if value == 'none' else value
            chunks.append([])
            chunks.append([arg, value])
            i += 2
            continue

        if arg == '-o':
            raise MalformedArgumentsError("-o needs a file name")
        if arg.startswith('-o') and len(arg) > 2:
            output_file = arg[2:]
            minus_o_pos = i
            chunks.append(['-o', arg[2:]])
        elif arg.startswith('-x') and len(arg) > 2:
            language = None if arg[2:] == 'none' else arg[2:]
            chunks.append([arg])
        elif arg.startswith('-std='):
            std = arg[len('-std='):]
            chunks.append([arg])
        else:
            if arg in ('-M', '-MM'):
                suppress_ppout = True
            chunks.append([arg])
        i += 1

    info = BasicInvocationInfo(
        driver_name=os.path.basename(argv[0]),
        output_file=output_file,
        minus_o_pos=minus_o_pos,
        suppress_ppout=suppress_ppout,
        language=language,
        std=std,
    )
    return chunks, info


@dataclass(frozen=True)
class DriverOptions:
    """Options private to the driver, pulled out of the command line."""
    save_temps: bool = False
    plugins: Tuple[str, ...] = ()
    passes: Tuple[str, ...] = ()
    real_cpp: Optional[str] = None


class _ExtraArg(Enum):
    PLUGIN = auto()
    REAL_CPP = auto()


def classify_chunks(chunks: Sequence[List[str]]) -> Tuple[List[List[str]], DriverOptions]:
    """Consume the driver's private options, leaving every other chunk alone.

    A consumed chunk is replaced by [], so the result has the same length as
    the input. The first chunk is the program name and is never consumed.
    A -plugin or -realcpp with nothing after it is dropped silently.
    """
    save_temps = False
    plugins: List[str] = []
    passes: List[str] = []
    real_cpp = None
    reading_extra_arg: Optional[_ExtraArg] = None

    rechunked: List[List[str]] = [list(chunk) for chunk in chunks[:1]]
    for chunk in chunks[1:]:
        if not chunk:
            rechunked.append([])
            continue

        if len(chunk) > 1:
            if reading_extra_arg is not None:
                raise MalformedArgumentsError(
                    f"expected a single argument after a private option, got {' '.join(chunk)!r}")
            rechunked.append(list(chunk))
            continue

        arg = chunk[0]
        # A pending value takes the next token even if it looks like one of
        # our own options, so `-plugin -fpass-x` loads a plugin named -fpass-x.
        if reading_extra_arg is _ExtraArg.PLUGIN:
            plugins.append(arg)
            reading_extra_arg = None
            rechunked.append([])
        elif reading_extra_arg is _ExtraArg.REAL_CPP:
            real_cpp = arg
            reading_extra_arg = None
            rechunked.append([])
        elif arg == '-save-temps':
            save_temps = True
            rechunked.append([])
        elif arg == '-realcpp':
            reading_extra_arg = _ExtraArg.REAL_CPP
            rechunked.append([])
        elif arg == '-plugin':
            reading_extra_arg = _ExtraArg.PLUGIN
            rechunked.append([])
        elif arg.startswith(PASS_OPTION_PREFIX):
            pass_name = arg[len(PASS_OPTION_PREFIX):]
            if not pass_name:
                raise MalformedArgumentsError(f"{arg} does not name a pass")
            passes.append(pass_name)
            rechunked.append([])
        else:
            rechunked.append([arg])

    options = DriverOptions(
        save_temps=save_temps,
        plugins=tuple(plugins),
        passes=tuple(passes),
        real_cpp=real_cpp,
    )
    return rechunked, options


# =============================================================================
# Delegate resolution and invocation
# =============================================================================

LANGUAGE_SUFFIXES = {
    'c': 'i',
    'c++': 'ii',
}

# -x values that name an already-known language under another spelling
_LANGUAGE_ALIASES = {
    'cpp-output': 'c',
    'c-header': 'c',
    'c++-cpp-output': 'c++',
    'c++-header': 'c++',
}

DEFAULT_CPP_COMMANDS = {
    'c': ['cc', '-E'],
    'c++': ['c++', '-E'],
}


def guess_language(info: BasicInvocationInfo) -> str:
    """Guess the source language from -x, then -std=, then the driver name."""
    if info.language:
        return _LANGUAGE_ALIASES.get(info.language, info.language)
    if info.std:
        return 'c++' if info.std.startswith(('c++', 'gnu++')) else 'c'
    name = info.driver_name.lower()
    if '++' in name or 'cxx' in name:
        return 'c++'
    return 'c'


def guess_cpp_command_and_lang(
    info: BasicInvocationInfo,
    real_cpp: Optional[str] = None
) -> Tuple[List[str], str]:
    lang = guess_language(info)
    if real_cpp is not None:
        prefix = shlex.split(real_cpp)
        if not prefix:
            raise MalformedArgumentsError("-realcpp names an empty command")
    else:
        prefix = list(DEFAULT_CPP_COMMANDS.get(lang, ['cpp']))
    return prefix, lang


def suffix_of_lang(lang: str) -> str:
    if lang not in LANGUAGE_SUFFIXES:
        raise UnresolvedLanguageError(f"{lang} is not a language")
    return LANGUAGE_SUFFIXES[lang]


def make_temp_file(suffix: str, directory: Optional[str] = None) -> Tuple[int, str]:
    """Atomically create a scratch file named tmp.XXXXXXXX.cpp.<suffix>."""
    return tempfile.mkstemp(prefix='tmp.', suffix='.cpp.' + suffix, dir=directory)


def remove_temp_file(path: str):
    try:
        os.unlink(path)
    except OSError:
        pass


def rewrite_args(
    chunks: Sequence[List[str]],
    temp_name: str,
    minus_o_pos: Optional[int]
) -> List[str]:
    """Flatten chunks into delegate arguments that write to temp_name.

    The program name chunk is dropped, every -o is pointed at temp_name, and
    a -o is added when the command line had none.
    """
    args = []
    for chunk in chunks[1:]:
        if len(chunk) == 2 and chunk[0] == '-o':
            args.extend(['-o', temp_name])
        else:
            args.extend(chunk)
    if minus_o_pos is None:
        args.extend(['-o', temp_name])
    return args


def run_command(what: str, cmd: List[str], reporter: Reporter) -> int:
    """Run cmd to completion and return its exit status."""
    reporter.log(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd)
    except OSError as e:
        raise DelegateError(f"failed to execute {what} ({cmd[0]}): {e}") from e
    return result.returncode


@dataclass(frozen=True)
class DelegateResult:
    temp_name: str
    output_file: Optional[str]
    save_temps: bool
    plugins: Tuple[str, ...]
    passes: Tuple[str, ...]
    language: str = 'c'


def run_cpp_diverting_to_temp_file(
    chunks: Sequence[List[str]],
    info: BasicInvocationInfo,
    reporter: Reporter,
    suffix: Optional[str] = None,
    real_cpp_default: Optional[str] = None,
    temp_dir: Optional[str] = None
) -> DelegateResult:
    """Run the real preprocessor with its output diverted into a temporary file.

    Args:
        chunks: Chunked command line from scan_and_chunk
        info: Invocation summary from scan_and_chunk
        reporter: Diagnostics sink
        suffix: Temporary file suffix; derived from the language when None
        real_cpp_default: Delegate command used when -realcpp is absent
        temp_dir: Directory for the temporary file

    Returns:
        DelegateResult describing what the rest of the driver must do
    """
    rechunked, options = classify_chunks(chunks)
    real_cpp = options.real_cpp if options.real_cpp is not None else real_cpp_default
    cpp_command_prefix, guessed_lang = guess_cpp_command_and_lang(info, real_cpp)
    if suffix is None:
        suffix = suffix_of_lang(guessed_lang)

    fd, temp_name = make_temp_file(suffix, temp_dir)
    os.close(fd)

    cmd = cpp_command_prefix + rewrite_args(rechunked, temp_name, info.minus_o_pos)
    try:
        status = run_command('cpp', cmd, reporter)
        if status != 0:
            raise DelegateError(f"{cpp_command_prefix[0]} exited with status {status}", status)
    except DelegateError:
        if options.save_temps:
            reporter.log(f"Keeping temporary file: {temp_name}")
        else:
            remove_temp_file(temp_name)
        raise

    return DelegateResult(
        temp_name=temp_name,
        output_file=info.output_file,
        save_temps=options.save_temps,
        plugins=options.plugins,
        passes=options.passes,
        language=guessed_lang,
    )


def run_passthrough(
    chunks: Sequence[List[str]],
    info: BasicInvocationInfo,
    reporter: Reporter,
    real_cpp_default: Optional[str] = None
) -> int:
    """Run the real preprocessor unchanged apart from our private options."""
    rechunked, options = classify_chunks(chunks)
    real_cpp = options.real_cpp if options.real_cpp is not None else real_cpp_default
    cpp_command_prefix, _ = guess_cpp_command_and_lang(info, real_cpp)
    args = [arg for chunk in rechunked[1:] for arg in chunk]
    return run_command('cpp', cpp_command_prefix + args, reporter)


# =============================================================================
# Program representation
# =============================================================================

class TokenKind(Enum):
    """Token types returned by the tokenizer"""
    KEYWORD = auto()
    IDENTIFIER = auto()
    LITERAL = auto()
    PUNCTUATION = auto()
    COMMENT = auto()
    UNKNOWN = auto()


@dataclass
class Token:
    """A single token of the preprocessed output"""
    kind: TokenKind
    spelling: str
    line: int      # 1-based line in the preprocessed output
    column: int    # 1-based column

    def __repr__(self):
        return f"Token({self.kind.name}, {self.spelling!r}, L{self.line}:{self.column})"


def _clang_kind_to_token_kind(clang_kind) -> TokenKind:
    """Convert clang token kind to our TokenKind enum"""
    try:
        return TokenKind[clang_kind.name]
    except KeyError:
        return TokenKind.UNKNOWN


def tokenize(source: str, language: str = 'c') -> List[Token]:
    """
    Tokenize preprocessed C or C++ source.

    Token lines count lines of the preprocessed text itself; line markers in
    the text do not renumber them.
    """
    if language == 'c++':
        filename, lang_flag = 'source.ii', 'c++-cpp-output'
    else:
        filename, lang_flag = 'source.i', 'cpp-output'

    index = clang.cindex.Index.create()
    tu = index.parse(
        filename,
        args=['-x', lang_flag],
        unsaved_files=[(filename, source)],
        options=clang.cindex.TranslationUnit.PARSE_DETAILED_PROCESSING_RECORD
    )

    tokens = []
    for clang_token in tu.get_tokens(extent=tu.cursor.extent):
        tokens.append(Token(
            kind=_clang_kind_to_token_kind(clang_token.kind),
            spelling=clang_token.spelling,
            line=clang_token.location.line,
            column=clang_token.location.column
        ))
    return tokens


@dataclass
class LineMarker:
    """Parsed preprocessor line marker"""
    line_num: int
    filename: Optional[str]
    flags: List[int]

    @property
    def is_entering_file(self) -> bool:
        return 1 in self.flags

    @property
    def is_returning_from_include(self) -> bool:
        return 2 in self.flags

    @property
    def is_system_header(self) -> bool:
        return 3 in self.flags


# Format: # linenum ["filename" [flags...]], or the #line spelling of the same
LINE_MARKER_PATTERN = re.compile(
    r'^#\s*(?:line\s+)?(\d+)(?:\s+"((?:[^"\\]|\\.)*)"((?:\s+\d+)*))?\s*$'
)

# Anything that starts out like a line marker
LINE_MARKER_LIKE_PATTERN = re.compile(r'^\s*#\s*(?:line\b|\d)')


def parse_line_marker(line: str) -> Optional[LineMarker]:
    match = LINE_MARKER_PATTERN.match(line.strip())
    if not match:
        return None
    flags = [int(flag) for flag in (match.group(3) or '').split()]
    return LineMarker(int(match.group(1)), match.group(2), flags)


class Program:
    """The preprocessed translation unit that passes work on.

    Passes edit `lines` in place. Tokens are produced from the current text on
    request, so they always reflect earlier passes.
    """

    def __init__(self, path: str, lines: List[str], language: str = 'c',
                 reporter: Optional[Reporter] = None, final_newline: bool = True):
        self.path = path
        self.lines = list(lines)
        self.language = language
        self.reporter = reporter if reporter is not None else Reporter()
        self.final_newline = final_newline

    @property
    def text(self) -> str:
        return '\n'.join(self.lines)

    def tokens(self) -> List[Token]:
        return tokenize(self.text, self.language)

    def origin(self, output_line: int) -> Tuple[str, int]:
        """Map a 1-based line of the program to the (file, line) it came from."""
        current_file = self.path
        current_line = 1
        for line in self.lines[:output_line - 1]:
            marker = parse_line_marker(line)
            if marker:
                current_line = marker.line_num
                if marker.filename is not None:
                    current_file = marker.filename
            else:
                current_line += 1
        return current_file, current_line

    def render(self) -> str:
        if not self.lines:
            return ''
        text = '\n'.join(self.lines)
        return text + '\n' if self.final_newline else text


def split_lines(content: str) -> Tuple[List[str], bool]:
    """Split on '\\n' only, so render() gives back exactly the same text.

    Returns:
        (lines, whether content ended with a newline)
    """
    if not content:
        return [], True
    lines = content.split('\n')
    final_newline = content.endswith('\n')
    if final_newline:
        lines.pop()
    return lines, final_newline


def parse_preprocessed(path: str, language: str = 'c',
                       reporter: Optional[Reporter] = None) -> Program:
    try:
        with open(path, 'r', encoding='utf-8', errors='surrogateescape', newline='') as f:
            content = f.read()
    except OSError as e:
        raise ParseError(f"cannot read preprocessed output {path}: {e}") from e
    lines, final_newline = split_lines(content)
    return Program(path, lines, language, reporter, final_newline)


_CLOSING_BRACKETS = {')': '(', ']': '[', '}': '{'}


def check_program(program: Program) -> List[str]:
    """Return a description of every inconsistency found in program."""
    problems = []
    for number, line in enumerate(program.lines, 1):
        if '\n' in line:
            problems.append(f"line {number} contains a line break")
        elif LINE_MARKER_LIKE_PATTERN.match(line) and parse_line_marker(line) is None:
            problems.append(f"line {number}: malformed line marker {line!r}")

    open_brackets: List[Token] = []
    for token in program.tokens():
        if token.kind != TokenKind.PUNCTUATION:
            continue
        if token.spelling in ('(', '[', '{'):
            open_brackets.append(token)
        elif token.spelling in _CLOSING_BRACKETS:
            if open_brackets and open_brackets[-1].spelling == _CLOSING_BRACKETS[token.spelling]:
                open_brackets.pop()
            else:
                problems.append(f"line {token.line}: unmatched '{token.spelling}'")
    for token in open_brackets:
        problems.append(f"line {token.line}: unclosed '{token.spelling}'")
    return problems


# =============================================================================
# Passes
# =============================================================================

@dataclass
class PassDescriptor:
    name: str
    description: str
    action: Callable[[Program], None]
    enabled: bool = False
    post_check: bool = True


class PassRegistry:
    """Passes in the order they were registered, which is the order they run in."""

    def __init__(self):
        self._passes: List[PassDescriptor] = []

    def register(self, descriptor: PassDescriptor) -> PassDescriptor:
        if self.find(descriptor.name) is not None:
            raise ValueError(f"pass {descriptor.name!r} is already registered")
        self._passes.append(descriptor)
        return descriptor

    def find(self, name: str) -> Optional[PassDescriptor]:
        for descriptor in self._passes:
            if descriptor.name == name:
                return descriptor
        return None

    def enable(self, name: str):
        descriptor = self.find(name)
        if descriptor is None:
            raise UnknownPassError(f"no pass named {name}")
        descriptor.enabled = True

    def names(self) -> List[str]:
        return [descriptor.name for descriptor in self._passes]

    def __iter__(self) -> Iterator[PassDescriptor]:
        return iter(list(self._passes))

    def __len__(self) -> int:
        return len(self._passes)


REGISTRY = PassRegistry()


def register_pass(name: str, description: str, post_check: bool = True,
                  registry: Optional[PassRegistry] = None):
    """Decorator registering a function as a pass.

        @register_pass('drop-asm', 'Remove asm statements')
        def drop_asm(program):
            ...
    """
    target = registry if registry is not None else REGISTRY

    def decorator(action: Callable[[Program], None]):
        target.register(PassDescriptor(name, description, action, post_check=post_check))
        return action
    return decorator


def enable_passes(names: Sequence[str], registry: Optional[PassRegistry] = None):
    target = registry if registry is not None else REGISTRY
    for name in names:
        target.enable(name)


def _import_plugin(name: str):
    if name.endswith('.py') or os.sep in name:
        # Namespaced so a plugin file never shadows a module of the same name.
        module_name = 'passcpp_plugin_' + os.path.splitext(os.path.basename(name))[0]
        if module_name in sys.modules:
            return sys.modules[module_name]
        spec = importlib.util.spec_from_file_location(module_name, name)
        if spec is None or spec.loader is None:
            raise ImportError(f"cannot load {name}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            del sys.modules[module_name]
            raise
        return module
    return importlib.import_module(name)


def _load_with_deps(name: str, loaded: List[str], pending: Tuple[str, ...],
                    registry: PassRegistry, reporter: Reporter):
    if name in loaded:
        return
    if name in pending:
        raise PluginError(f"plugin {name} depends on itself")
    reporter.log(f"Loading plugin {name}")
    try:
        module = _import_plugin(name)
    except Exception as e:
        raise PluginError(f"cannot load plugin {name}: {type(e).__name__}: {e}") from e
    for dependency in getattr(module, 'requires', ()):
        _load_with_deps(dependency, loaded, pending + (name,), registry, reporter)
    register = getattr(module, 'register', None)
    if register is not None:
        try:
            register(registry)
        except Exception as e:
            raise PluginError(f"cannot load plugin {name}: {type(e).__name__}: {e}") from e
    loaded.append(name)


def load_plugins(names: Sequence[str], reporter: Reporter,
                 registry: Optional[PassRegistry] = None) -> List[str]:
    """Load plugin modules in order, each after the plugins it `requires`.

    A plugin registers its passes either at import time with @register_pass
    or from a `register(registry)` function, which runs after its
    dependencies have loaded.

    Returns:
        Names of the plugins loaded, in load order
    """
    target = registry if registry is not None else REGISTRY
    loaded: List[str] = []
    for name in names:
        _load_with_deps(name, loaded, (), target, reporter)
    return loaded


class Stats:
    """Elapsed time per name, in the order names were first timed."""

    def __init__(self):
        self._times: Dict[str, float] = {}

    def timed(self, name: str, func: Callable, *args):
        start = time.perf_counter()
        try:
            return func(*args)
        finally:
            elapsed = time.perf_counter() - start
            self._times[name] = self._times.get(name, 0.0) + elapsed

    def elapsed(self, name: str) -> float:
        return self._times.get(name, 0.0)

    def names(self) -> List[str]:
        return list(self._times)

    def report(self) -> str:
        lines = ['Timings:']
        for name, elapsed in self._times.items():
            lines.append(f"  {name:<30} {elapsed:10.6f} s")
        return '\n'.join(lines)


def run_passes(
    program: Program,
    registry: Optional[PassRegistry] = None,
    stats: Optional[Stats] = None,
    check: bool = False,
    strict: bool = False
):
    """Run every enabled pass over program, in registration order.

    Args:
        program: Program to transform in place
        registry: Passes to consider; defaults to the global registry
        stats: Collects the time spent in each pass
        check: Check consistency after each pass that asks for it
        strict: Make a failed check fatal instead of a warning
    """
    target = registry if registry is not None else REGISTRY
    stats = stats if stats is not None else Stats()
    reporter = program.reporter

    for descriptor in target:
        if not descriptor.enabled:
            continue
        reporter.log(f"Running pass {descriptor.name} ({descriptor.description})")
        try:
            stats.timed(descriptor.name, descriptor.action, program)
        except LookupError as e:
            reporter.error(f"pass {descriptor.name} raised {type(e).__name__}: {e}")
            raise PassError(descriptor.name,
                            f"pass {descriptor.name} raised {type(e).__name__}") from e

        if check and descriptor.post_check:
            reporter.log(f"Checking after {descriptor.name}")
            problems = check_program(program)
            if not problems:
                continue
            for problem in problems:
                reporter.warning(problem)
            message = (f'pass "{descriptor.name}" left the program in an '
                       f'inconsistent state (see the warnings above)')
            if strict:
                raise ConsistencyError(descriptor.name, message)
            reporter.warning(message)


# =============================================================================
# Built-in passes
# =============================================================================

@register_pass('strip-line-markers', 'Remove preprocessor line markers')
def strip_line_markers(program: Program):
    program.lines[:] = [line for line in program.lines if parse_line_marker(line) is None]


@register_pass('squeeze-blank-lines', 'Collapse runs of blank lines into one')
def squeeze_blank_lines(program: Program):
    squeezed = []
    for line in program.lines:
        if not line.strip() and squeezed and not squeezed[-1].strip():
            continue
        squeezed.append(line)
    program.lines[:] = squeezed


PRAGMA_PATTERN = re.compile(r'^\s*#\s*pragma\b')


@register_pass('strip-pragmas', 'Remove #pragma directives')
def strip_pragmas(program: Program):
    program.lines[:] = [line for line in program.lines if not PRAGMA_PATTERN.match(line)]


# =============================================================================
# Output and entry point
# =============================================================================

def emit(program: Program, output_file: Optional[str], reporter: Reporter) -> int:
    """Write program to output_file (stdout for None or '-') and return the exit status."""
    text = program.render()
    if output_file is None or output_file == '-':
        try:
            stream = getattr(sys.stdout, 'buffer', None)
            if stream is None:
                sys.stdout.write(text)
            else:
                sys.stdout.flush()
                stream.write(text.encode('utf-8', 'surrogateescape'))
                stream.flush()
            sys.stdout.flush()
        except OSError as e:
            reporter.error(f"cannot write to stdout: {e}")
    else:
        try:
            with open(output_file, 'w', encoding='utf-8', errors='surrogateescape',
                      newline='') as f:
                f.write(text)
        except OSError as e:
            reporter.error(f"cannot write {output_file}: {e}")
    return 1 if reporter.had_errors else 0


def run_driver(argv: Sequence[str], config: Optional[DriverConfig] = None,
               registry: Optional[PassRegistry] = None) -> int:
    """Run the whole driver for one command line; DriverError escapes."""
    config = config if config is not None else DriverConfig.from_env()
    target = registry if registry is not None else REGISTRY
    reporter = Reporter(verbose=config.verbose)

    chunks, info = scan_and_chunk(argv)
    if info.suppress_ppout:
        reporter.log("No preprocessed output requested, passing through")
        return run_passthrough(chunks, info, reporter, config.real_cpp)

    result = run_cpp_diverting_to_temp_file(
        chunks, info, reporter,
        real_cpp_default=config.real_cpp,
        temp_dir=config.temp_dir,
    )
    stats = Stats()
    try:
        load_plugins(result.plugins, reporter, target)
        enable_passes(result.passes, target)
        program = parse_preprocessed(result.temp_name, result.language, reporter)
        run_passes(program, target, stats, check=config.check, strict=config.strict)
        return emit(program, result.output_file, reporter)
    finally:
        if config.stats:
            print(stats.report(), file=sys.stderr)
        if result.save_temps:
            reporter.log(f"Keeping temporary file: {result.temp_name}")
        else:
            remove_temp_file(result.temp_name)


def main(argv: Optional[Sequence[str]] = None) -> int:
    argv = list(sys.argv if argv is None else argv)
    try:
        return run_driver(argv)
    except DriverError as e:
        print(f"passcpp: {e.stage} error: {e}", file=sys.stderr)
        return 2


if __name__ == '__main__':
    # Plugins import passcpp; make that the module that is running.
    sys.modules.setdefault('passcpp', sys.modules[__name__])
    sys.exit(main())
