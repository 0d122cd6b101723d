#!/usr/bin/env python3
"""
svlint - Style rule enforcement for SystemVerilog

High-level flow:
- Resolve filelists into source files, include directories and defines
- Parse each file with slang (pyslang), threading the define table from one
  file into the next
- Dispatch every syntax node to every enabled rule
- Print failures and report a pass/fail verdict through the exit code
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Literal, Optional, Sequence, TextIO, Tuple
import argparse
import importlib.util
import os
import re
import sys

import pyslang
import tomli_w

try:
    import tomllib
except ImportError:  # Python < 3.11
    import tomli as tomllib  # type: ignore

__version__ = "0.1.0"

DEFAULT_CONFIG_NAME = ".svlint.toml"


# ============================================================
# ========================= ERRORS ===========================
# ============================================================

class SvlintError(Exception):
    """Fatal error. Aborts the whole run with exit code 2."""


class ConfigError(SvlintError):
    pass


class FilelistError(SvlintError):
    pass


class PluginError(SvlintError):
    pass


class ParseError(Exception):
    """
    A single source file could not be parsed.

    Only the offending file fails; the run carries on with the next one.
    ``kind`` is one of "parse", "include", "define_arg", "define" or "io".
    """

    def __init__(
        self,
        kind: str,
        path: Path,
        line: Optional[int] = None,
        column: Optional[int] = None,
        detail: str = "",
    ) -> None:
        super().__init__(detail or f"{kind} error in '{path}'")
        self.kind = kind
        self.path = path
        self.line = line
        self.column = column
        self.detail = detail

    def message(self) -> str:
        if self.kind == "include":
            return f"failed to include '{self.detail}'"
        if self.kind == "define_arg":
            return f"define argument '{self.detail}' is not found"
        if self.kind == "define":
            return f"define '{self.detail}' is not found"
        if self.kind == "io":
            return self.detail
        return "parse error"


# ============================================================
# ========================= DEFINES ==========================
# ============================================================

@dataclass(frozen=True)
class Define:
    """
    One macro definition: `define identifier(arguments) text
    """
    identifier: str
    arguments: Tuple[str, ...] = ()
    text: Optional[str] = None

    def to_predefine(self) -> str:
        """Render in the NAME[(args)][=text] form the slang preprocessor accepts."""
        head = self.identifier
        if self.arguments:
            head += "(" + ",".join(self.arguments) + ")"
        if self.text is None:
            return head
        return f"{head}={self.text}"


_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0", "\\": "\\", '"': '"', "'": "'"}
_ESCAPE_PATTERN = re.compile(r"\\(.)", re.DOTALL)


def unescape(text: str) -> str:
    return _ESCAPE_PATTERN.sub(lambda m: _ESCAPES.get(m.group(1), m.group(0)), text)


def parse_define_arg(value: str) -> Define:
    """Parse a command-line `ident[=text]` define. The text is unescaped."""
    ident, sep, text = value.partition("=")
    return Define(ident, text=unescape(text) if sep else None)


# ============================================================
# ======================== FILELIST ==========================
# ============================================================

ENV_PATTERN = re.compile(r"\$\{(?P<brace>[^}]+)\}|\$\((?P<paren>[^)]+)\)")


def expand_env(line: str, environ: Optional[Dict[str, str]] = None) -> str:
    """
    Replace ${NAME} and $(NAME) with the environment value.
    Unknown variables are left as written.
    """
    env = os.environ if environ is None else environ

    def _replace(match: "re.Match[str]") -> str:
        name = match.group("brace") or match.group("paren")
        return env.get(name, match.group(0))

    return ENV_PATTERN.sub(_replace, line)


@dataclass
class Filelist:
    files: List[Path] = field(default_factory=list)
    includes: List[Path] = field(default_factory=list)
    defines: Dict[str, Define] = field(default_factory=dict)

    def merge(self, other: "Filelist") -> None:
        """Append another filelist's content. Later defines win."""
        self.files.extend(other.files)
        self.includes.extend(other.includes)
        self.defines.update(other.defines)


def parse_filelist(path: Path) -> Filelist:
    """
    Resolve a filelist into its files, include directories and defines.

    Recognized lines:
      +incdir+<dir>[+<dir>...]
      +define+<id>[=<text>][+...]
      -f <filelist>             (resolved recursively, no cycle guard)
      <path>                    (a source file)
    Lines starting with // are comments. Any other +/- option is ignored.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise FilelistError(f"failed to open '{path}': {exc}") from exc

    result = Filelist()
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("//"):
            continue

        line = expand_env(line)
        if line.startswith("+incdir+"):
            for directory in line[len("+incdir+"):].split("+"):
                if directory:
                    result.includes.append(Path(directory))
        elif line.startswith("+define+"):
            for item in line[len("+define+"):].split("+"):
                if not item:
                    continue
                ident, sep, value = item.partition("=")
                result.defines[ident] = Define(ident, text=value if sep else None)
        elif line.startswith("-f "):
            result.merge(parse_filelist(Path(line[len("-f "):].strip())))
        elif line.startswith(("+", "-")):
            # Unknown tool option
            continue
        else:
            result.files.append(Path(line))

    return result


# ============================================================
# ======================= RULE MODEL =========================
# ============================================================

@dataclass(frozen=True)
class RuleResult:
    """
    Outcome of one rule on one node.

    kind:
      "pass"        - compliant, or the node is irrelevant to the rule
      "fail"        - non-compliant, reported at the dispatched node
      "fail_locate" - non-compliant, reported at `locate` (a pyslang.SourceRange)
    """
    kind: Literal["pass", "fail", "fail_locate"]
    locate: Any = None

    @property
    def passed(self) -> bool:
        return self.kind == "pass"


PASS = RuleResult("pass")
FAIL = RuleResult("fail")


def fail_locate(locate: Any) -> RuleResult:
    return RuleResult("fail_locate", locate)


class Rule(ABC):
    """
    A stateless check over one syntax node.

    `check` receives the whole pyslang.SyntaxTree and one node of it, and must
    return PASS for every node kind it does not care about. Rules must not keep
    state between calls nor depend on other rules.
    """

    @abstractmethod
    def check(self, tree: Any, node: Any) -> RuleResult:
        raise NotImplementedError

    @abstractmethod
    def name(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def hint(self) -> str:
        raise NotImplementedError

    def reason(self) -> str:
        return ""


def is_rule(obj: Any) -> bool:
    """Duck-typed Rule check, so plugins need not subclass Rule."""
    return all(callable(getattr(obj, attr, None)) for attr in ("check", "name", "hint", "reason"))


@dataclass(frozen=True)
class Failed:
    name: str
    hint: str
    reason: str
    path: str
    line: int
    column: int
    length: int = 1


# ============================================================
# ===================== SYNTAX ACCESSORS =====================
# ============================================================

def node_kind(node: Any) -> Any:
    return getattr(node, "kind", None)


def is_generate_block(node: Any) -> bool:
    """True for a begin/end generate block."""
    return node_kind(node) == pyslang.SyntaxKind.GenerateBlock


def generate_block_label(node: Any) -> Any:
    """
    The label of a begin/end generate block, either `begin : name` or
    `name : begin`. None when the node is not a block or has no label.
    """
    if not is_generate_block(node):
        return None
    if node.beginName is not None:
        return node.beginName
    return node.label


def else_clause(node: Any) -> Any:
    return getattr(node, "elseClause", None)


def unique_or_priority(node: Any) -> Any:
    """The unique/unique0/priority token of an if or case statement, if any."""
    if node_kind(node) not in (
        pyslang.SyntaxKind.ConditionalStatement,
        pyslang.SyntaxKind.CaseStatement,
    ):
        return None
    return node.uniqueOrPriority


def module_port_list(node: Any) -> Any:
    if node_kind(node) != pyslang.SyntaxKind.ModuleDeclaration:
        return None
    return node.header.ports


# ============================================================
# ====================== BUILT-IN RULES ======================
# ============================================================

class GenerateIfWithLabel(Rule):
    def check(self, tree: Any, node: Any) -> RuleResult:
        if node_kind(node) != pyslang.SyntaxKind.IfGenerate:
            return PASS
        # `if` branch without begin, or begin without label
        if generate_block_label(node.block) is None:
            return FAIL

        clause = else_clause(node)
        # `else if` is checked on its own IfGenerate node
        if clause is None or not is_generate_block(clause.clause):
            return PASS
        if generate_block_label(clause.clause) is None:
            return fail_locate(clause.elseKeyword.range)
        return PASS

    def name(self) -> str:
        return "generate_if_with_label"

    def hint(self) -> str:
        return "`generate if` must have label"

    def reason(self) -> str:
        return "the hierarchiral path can't be determined"


class GenerateForWithLabel(Rule):
    def check(self, tree: Any, node: Any) -> RuleResult:
        if node_kind(node) != pyslang.SyntaxKind.LoopGenerate:
            return PASS
        if generate_block_label(node.block) is None:
            return FAIL
        return PASS

    def name(self) -> str:
        return "generate_for_with_label"

    def hint(self) -> str:
        return "`generate for` must have label"

    def reason(self) -> str:
        return "the hierarchiral path can't be determined"


class GenerateKeyword(Rule):
    def check(self, tree: Any, node: Any) -> RuleResult:
        if node_kind(node) == pyslang.SyntaxKind.GenerateRegion:
            return FAIL
        return PASS

    def name(self) -> str:
        return "generate_keyword"

    def hint(self) -> str:
        return "`generate`/`endgenerate` must be omitted"


class NonAnsiModule(Rule):
    def check(self, tree: Any, node: Any) -> RuleResult:
        if node_kind(module_port_list(node)) == pyslang.SyntaxKind.NonAnsiPortList:
            return FAIL
        return PASS

    def name(self) -> str:
        return "non_ansi_module"

    def hint(self) -> str:
        return "module declaration must be ANSI-style"

    def reason(self) -> str:
        return "non-ANSI-style has duplicated port declaration"


class PriorityKeyword(Rule):
    def check(self, tree: Any, node: Any) -> RuleResult:
        token = unique_or_priority(node)
        if token is not None and token.kind == pyslang.TokenKind.PriorityKeyword:
            return fail_locate(token.range)
        return PASS

    def name(self) -> str:
        return "priority_keyword"

    def hint(self) -> str:
        return "`priority` is forbidden"

    def reason(self) -> str:
        return "this causes mismatch between simulaton and synthesis"


class UniqueKeyword(Rule):
    def check(self, tree: Any, node: Any) -> RuleResult:
        token = unique_or_priority(node)
        if token is not None and token.kind == pyslang.TokenKind.UniqueKeyword:
            return fail_locate(token.range)
        return PASS

    def name(self) -> str:
        return "unique_keyword"

    def hint(self) -> str:
        return "`unique` is forbidden"

    def reason(self) -> str:
        return "this causes mismatch between simulaton and synthesis"


BUILTIN_RULES: List[Callable[[], Rule]] = [
    GenerateForWithLabel,
    GenerateIfWithLabel,
    GenerateKeyword,
    NonAnsiModule,
    PriorityKeyword,
    UniqueKeyword,
]


def builtin_rules() -> List[Rule]:
    return [factory() for factory in BUILTIN_RULES]


def rule_names() -> List[str]:
    return [rule.name() for rule in builtin_rules()]


# ============================================================
# ========================= CONFIG ===========================
# ============================================================

@dataclass
class ConfigOption:
    # Regexes; source paths matching any of them are not linted
    exclude_paths: List[str] = field(default_factory=list)


@dataclass
class Config:
    """
    Rule enable map plus auxiliary options, mirroring the TOML file:

        [option]
        exclude_paths = []

        [rules]
        generate_keyword = true
    """
    rules: Dict[str, bool] = field(default_factory=lambda: {name: False for name in rule_names()})
    option: ConfigOption = field(default_factory=ConfigOption)

    def enable_all(self) -> "Config":
        return Config(
            rules={name: True for name in self.rules},
            option=ConfigOption(exclude_paths=list(self.option.exclude_paths)),
        )

    def is_enabled(self, name: str) -> bool:
        return self.rules.get(name, False)

    def is_excluded(self, path: Path) -> bool:
        return any(re.search(pattern, str(path)) for pattern in self.option.exclude_paths)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "option": {"exclude_paths": list(self.option.exclude_paths)},
            "rules": dict(self.rules),
        }

    def to_toml(self) -> str:
        return tomli_w.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any], origin: str = "<config>") -> "Config":
        raw_rules = data.get("rules", {})
        if not isinstance(raw_rules, dict):
            raise ConfigError(f"failed to parse toml '{origin}': [rules] must be a table")

        config = cls()
        for name, value in raw_rules.items():
            if name not in config.rules:
                sys.stderr.write(f"[svlint] Unknown rule '{name}' in '{origin}' is ignored.\n")
                continue
            if not isinstance(value, bool):
                raise ConfigError(
                    f"failed to parse toml '{origin}': rule '{name}' must be true or false"
                )
            config.rules[name] = value

        raw_option = data.get("option", {})
        if not isinstance(raw_option, dict):
            raise ConfigError(f"failed to parse toml '{origin}': [option] must be a table")
        exclude_paths = raw_option.get("exclude_paths", [])
        if not isinstance(exclude_paths, list) or not all(isinstance(p, str) for p in exclude_paths):
            raise ConfigError(
                f"failed to parse toml '{origin}': option.exclude_paths must be a list of strings"
            )
        for pattern in exclude_paths:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ConfigError(
                    f"failed to parse toml '{origin}': bad exclude_paths pattern {pattern!r} ({exc})"
                ) from exc
        config.option.exclude_paths = list(exclude_paths)
        return config

    @classmethod
    def from_toml(cls, text: str, origin: str = "<config>") -> "Config":
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"failed to parse toml '{origin}': {exc}") from exc
        return cls.from_dict(data, origin)


def search_config(name: Path, start: Optional[Path] = None) -> Optional[Path]:
    """Look for the config file in `start` (default: cwd) and its ancestors."""
    current = Path.cwd() if start is None else start
    for directory in (current, *current.parents):
        candidate = directory / name
        if candidate.exists():
            return candidate
    return None


def load_config(path: Path) -> Config:
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"failed to open '{path}': {exc}") from exc
    return Config.from_toml(text, str(path))


def write_config(path: Path, config: Config) -> None:
    try:
        path.write_text(config.to_toml(), encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"failed to write '{path}': {exc}") from exc


# ============================================================
# ========================= PLUGINS ==========================
# ============================================================

PLUGIN_ENTRY_POINT = "get_plugin"


def load_plugin(path: Path) -> List[Rule]:
    """
    Import a plugin module from a file and collect its rules.

    The module must define get_plugin() returning one rule or an iterable
    of rules.
    """
    path = Path(path)
    if not path.is_file():
        raise PluginError(f"failed to load plugin '{path}': file not found")

    module_name = "svlint_plugin_" + re.sub(r"\W", "_", path.stem)
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise PluginError(f"failed to load plugin '{path}': not a Python module")

    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        raise PluginError(f"failed to load plugin '{path}': {exc}") from exc

    entry = getattr(module, PLUGIN_ENTRY_POINT, None)
    if not callable(entry):
        raise PluginError(f"failed to load plugin '{path}': no {PLUGIN_ENTRY_POINT}() found")

    try:
        contributed = entry()
    except Exception as exc:
        raise PluginError(f"failed to load plugin '{path}': {PLUGIN_ENTRY_POINT}() raised {exc!r}") from exc

    if is_rule(contributed):
        return [contributed]
    try:
        rules = list(contributed)
    except TypeError as exc:
        raise PluginError(f"failed to load plugin '{path}': {PLUGIN_ENTRY_POINT}() returned no rules") from exc

    for rule in rules:
        if not is_rule(rule):
            raise PluginError(f"failed to load plugin '{path}': {rule!r} is not a rule")
    return rules


# ============================================================
# ========================= LINTER ===========================
# ============================================================

class Linter:
    """
    Holds the active rules and dispatches nodes to them.

    Built-in rules are enabled from the config; plugin rules are appended by
    `load`. A rule name can be registered once; a second registration under
    the same name is rejected with PluginError.
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        self.rules: List[Rule] = []
        self._names: List[str] = []
        self._origins: Dict[str, str] = {}
        for rule in builtin_rules():
            if config.is_enabled(rule.name()):
                self.register(rule)

    def register(self, rule: Rule, origin: str = "built-in rules") -> None:
        try:
            name = str(rule.name())
        except Exception as exc:
            raise PluginError(f"rule from {origin} failed in name(): {exc}") from exc
        if name in self._origins:
            raise PluginError(
                f"rule '{name}' from {origin} is already registered by {self._origins[name]}"
            )
        self._origins[name] = origin
        self._names.append(name)
        self.rules.append(rule)

    def load(self, path: Path) -> None:
        for rule in load_plugin(path):
            self.register(rule, origin=f"plugin '{path}'")

    def check(self, tree: Any, node: Any) -> List[Tuple[Rule, RuleResult]]:
        failures: List[Tuple[Rule, RuleResult]] = []
        for rule, name in zip(self.rules, self._names):
            try:
                result = rule.check(tree, node)
            except Exception as exc:
                raise PluginError(
                    f"rule '{name}' from {self._origins[name]} failed in check(): {exc}"
                ) from exc
            if not isinstance(result, RuleResult):
                raise PluginError(
                    f"rule '{name}' from {self._origins[name]} returned {result!r}, expected a RuleResult"
                )
            if not result.passed:
                failures.append((rule, result))
        return failures

    def describe(self, rule: Rule) -> Tuple[str, str, str]:
        """(name, hint, reason) of a registered rule."""
        name = self._names[self.rules.index(rule)]
        try:
            return name, str(rule.hint()), str(rule.reason())
        except Exception as exc:
            raise PluginError(f"rule '{name}' from {self._origins[name]} failed: {exc}") from exc


# ============================================================
# ===================== SLANG FRONTEND =======================
# ============================================================

@dataclass
class ParsedSource:
    path: Path
    tree: Any  # pyslang.SyntaxTree
    defines: Dict[str, Define]


@dataclass(frozen=True)
class Location:
    path: str
    line: int
    column: int
    length: int = 1


ParseFunc = Callable[[Path, Dict[str, Define], Sequence[Path], bool], ParsedSource]

# Substrings of slang diagnostic code names and messages, mapped to ParseError kinds
_PARSE_ERROR_KINDS = (
    ("CouldNotOpenIncludeFile", "include"),
    ("could not find or open include file", "include"),
    ("ExpectedMacroArgs", "define_arg"),
    ("NotEnoughMacroArgs", "define_arg"),
    ("TooManyActualMacroArgs", "define_arg"),
    ("expected macro arguments", "define_arg"),
    ("not enough arguments provided to macro", "define_arg"),
    ("too many arguments provided to", "define_arg"),
    ("UnknownDirective", "define"),
    ("unknown macro or compiler directive", "define"),
)

_INCLUDE_PATTERN = re.compile(r"`include\s*[\"<]([^\">]+)")
_MACRO_PATTERN = re.compile(r"`(\w+)")


def _walk(root: Any) -> Iterator[Any]:
    """Pre-order walk over nodes and tokens."""
    stack = [root]
    while stack:
        item = stack.pop()
        yield item
        if isinstance(item, pyslang.SyntaxNode):
            children = [item[index] for index in range(len(item))]
            stack.extend(child for child in reversed(children) if child is not None)


def iter_nodes(root: Any) -> Iterator[Any]:
    """Every syntax node under root (root included), in pre-order."""
    for item in _walk(root):
        if isinstance(item, pyslang.SyntaxNode):
            yield item


def iter_tokens(root: Any) -> Iterator[Any]:
    for item in _walk(root):
        if isinstance(item, pyslang.Token):
            yield item


def _token_text(token: Any) -> str:
    return "".join(trivia.getRawText() for trivia in token.trivia) + token.rawText


def define_from_directive(directive: Any) -> Define:
    arguments: List[str] = []
    if directive.formalArguments is not None:
        for argument in directive.formalArguments.args:
            if isinstance(argument, pyslang.SyntaxNode):
                arguments.append(str(argument).strip())
    body = "".join(_token_text(token) for token in directive.body).strip()
    return Define(directive.name.valueText, tuple(arguments), body or None)


def thread_defines(tree: Any, defines: Dict[str, Define]) -> Dict[str, Define]:
    """
    Defines in effect after `tree`: the incoming table updated by every
    `define / `undef / `undefineall the preprocessor processed, in order.
    """
    result = dict(defines)
    for token in iter_tokens(tree.root):
        for trivia in token.trivia:
            if trivia.kind != pyslang.TriviaKind.Directive:
                continue
            directive = trivia.syntax()
            kind = node_kind(directive)
            if kind == pyslang.SyntaxKind.DefineDirective:
                define = define_from_directive(directive)
                result[define.identifier] = define
            elif kind == pyslang.SyntaxKind.UndefDirective:
                result.pop(directive.name.valueText, None)
            elif kind == pyslang.SyntaxKind.UndefineAllDirective:
                result.clear()
    return result


def _add_include_dirs(source_manager: Any, options: Any, includes: Sequence[Path]) -> None:
    # Include search paths moved from SourceManager to PreprocessorOptions in newer slang
    if hasattr(options, "additionalIncludePaths"):
        options.additionalIncludePaths = [str(path) for path in includes]
    else:
        for path in includes:
            source_manager.addUserDirectories(str(path))


def resolve_location(tree: Any, source_range: Any, fallback: Path) -> Location:
    return resolve_span(tree, source_range.start, source_range.end, fallback)


def resolve_span(tree: Any, start: Any, end: Any, fallback: Path) -> Location:
    """Map slang locations to a file position; macro expansions map to their use site."""
    source_manager = tree.sourceManager
    if source_manager.isMacroLoc(start):
        start = source_manager.getFullyExpandedLoc(start)
        end = start
    line = source_manager.getLineNumber(start)
    column = source_manager.getColumnNumber(start)
    # Locations in the parsed buffer itself keep the path the file was given by
    path = str(fallback)
    if source_manager.isIncludedFileLoc(start):
        path = str(source_manager.getFileName(start)) or path
    return Location(path=path, line=line, column=column, length=max(end.offset - start.offset, 1))


def read_source_line(path: str, line: int) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            for number, text in enumerate(handle, start=1):
                if number == line:
                    return text.rstrip("\r\n")
    except OSError:
        return None
    return None


def _classify_diagnostic(tree: Any, diagnostic: Any) -> str:
    code = f"{diagnostic.code!s} {diagnostic.code!r}"
    for marker, kind in _PARSE_ERROR_KINDS:
        if marker in code:
            return kind

    report = pyslang.DiagnosticEngine.reportAll(tree.sourceManager, [diagnostic])
    for marker, kind in _PARSE_ERROR_KINDS:
        if marker in report:
            return kind
    return "parse"


def macro_name_at(text: str, column: int) -> Optional[str]:
    """
    Name of the macro usage a diagnostic at `column` (1-based) points into.

    slang may place macro errors anywhere from the backtick to just past the
    name. The last usage starting at or before the column is taken, else the
    first one on the line.
    """
    name = None
    for match in _MACRO_PATTERN.finditer(text):
        if name is not None and match.start() >= column:
            break
        name = match.group(1)
    return name


def _parse_error(tree: Any, diagnostic: Any, kind: str, path: Path) -> ParseError:
    location = resolve_span(tree, diagnostic.location, diagnostic.location, path)
    line = location.line or None
    column = location.column or None
    detail = ""
    text = read_source_line(location.path, location.line) if line else None
    if kind == "include":
        match = _INCLUDE_PATTERN.search(text or "")
        detail = match.group(1) if match else location.path
    elif kind in ("define", "define_arg"):
        detail = macro_name_at(text or "", column or 1) or "?"
    return ParseError(kind, Path(location.path), line, column, detail)


def parse_sv(
    path: Path,
    defines: Dict[str, Define],
    includes: Sequence[Path],
    ignore_include: bool = False,
) -> ParsedSource:
    """
    Parse one file with slang, seeded with `defines`.

    Returns the tree and the define table in effect at the end of the file.
    Raises ParseError on the first error diagnostic. With ignore_include,
    include directories are not searched and unresolved includes are not
    errors.
    """
    path = Path(path)
    if not path.is_file():
        raise ParseError("io", path, detail=f"failed to open '{path}'")

    source_manager = pyslang.SourceManager()
    options = pyslang.PreprocessorOptions()
    options.predefines = [define.to_predefine() for define in defines.values()]
    if not ignore_include:
        _add_include_dirs(source_manager, options, includes)

    try:
        tree = pyslang.SyntaxTree.fromFile(str(path), source_manager, pyslang.Bag([options]))
    except (OSError, RuntimeError) as exc:
        raise ParseError("io", path, detail=f"failed to open '{path}': {exc}") from exc

    for diagnostic in tree.diagnostics:
        if not diagnostic.isError():
            continue
        kind = _classify_diagnostic(tree, diagnostic)
        if kind == "include" and ignore_include:
            continue
        raise _parse_error(tree, diagnostic, kind, path)

    return ParsedSource(path=path, tree=tree, defines=thread_defines(tree, defines))


# ============================================================
# ======================== AGGREGATOR ========================
# ============================================================

def lint_tree(linter: Linter, parsed: ParsedSource) -> List[Failed]:
    """
    Dispatch every node of one parsed file to the linter.
    All failures are collected; the file passes iff the list is empty.
    """
    failed: List[Failed] = []
    tree = parsed.tree
    for node in iter_nodes(tree.root):
        for rule, result in linter.check(tree, node):
            source_range = result.locate if result.kind == "fail_locate" else node.sourceRange
            location = resolve_location(tree, source_range, parsed.path)
            name, hint, reason = linter.describe(rule)
            failed.append(
                Failed(
                    name=name,
                    hint=hint,
                    reason=reason,
                    path=location.path,
                    line=location.line,
                    column=location.column,
                    length=location.length,
                )
            )
    return failed


# ============================================================
# ========================= PRINTER ==========================
# ============================================================

class Printer:
    """Plain-text diagnostic output."""

    def __init__(self, out: Optional[TextIO] = None) -> None:
        self.out = out if out is not None else sys.stdout

    def _write(self, text: str) -> None:
        self.out.write(text + "\n")

    def _snippet(self, path: str, line: int, column: int, length: int, notes: List[str]) -> None:
        gutter = " " * len(str(line))
        self._write(f"{gutter}--> {path}:{line}:{column}")
        text = read_source_line(path, line)
        if text is None:
            return

        prefix = text[: column - 1]
        indent = "".join("\t" if ch == "\t" else " " for ch in prefix)
        width = max(1, min(length, len(text) - len(prefix)))
        self._write(f"{gutter} |")
        self._write(f"{line} | {text}")
        markers = ["^" * width] + [" " * width] * (len(notes) - 1)
        for marker, note in zip(markers, notes):
            self._write(f"{gutter} | {indent}{marker} {note}")
        self._write("")

    def print_failed(self, failed: Failed, single: bool = False) -> None:
        if single:
            message = f"Fail: {failed.path}:{failed.line}:{failed.column} {failed.name} hint: {failed.hint}"
            if failed.reason:
                message += f" reason: {failed.reason}"
            self._write(message)
            return

        self._write(f"Fail: {failed.name}")
        self._snippet(
            failed.path,
            failed.line,
            failed.column,
            failed.length,
            [f"hint  : {failed.hint}", f"reason: {failed.reason}"],
        )

    def print_parse_error(self, error: ParseError, single: bool = False) -> None:
        if error.kind != "parse" or error.line is None:
            self.print_error(error.message())
            return

        column = error.column or 1
        if single:
            self._write(f"Error: {error.path}:{error.line}:{column} parse error")
            return
        self._write("Error: parse error")
        self._snippet(str(error.path), error.line, column, 1, ["parse error"])

    def print_info(self, message: str) -> None:
        self._write(f"Info: {message}")

    def print_error(self, message: str) -> None:
        self._write(f"Error: {message}")


# ============================================================
# ========================= PIPELINE =========================
# ============================================================

def run_files(
    linter: Linter,
    files: Sequence[Path],
    defines: Dict[str, Define],
    includes: Sequence[Path],
    *,
    parse: ParseFunc = parse_sv,
    printer: Optional[Printer] = None,
    ignore_include: bool = False,
    single: bool = False,
    silent: bool = False,
    verbose: bool = False,
) -> bool:
    """
    Parse and lint files strictly in order.

    The define table returned by parsing one file is the input for the next
    one; a file that fails to parse leaves the table untouched. Returns True
    when every file parsed and passed every rule.
    """
    printer = printer or Printer()
    all_pass = True

    for path in files:
        if linter.config.is_excluded(path):
            if verbose:
                sys.stderr.write(f"[svlint] Skipping excluded file '{path}'.\n")
            continue

        try:
            parsed = parse(path, defines, includes, ignore_include)
        except ParseError as error:
            if not silent:
                printer.print_parse_error(error, single)
            all_pass = False
            continue

        defines = parsed.defines
        failures = lint_tree(linter, parsed)
        if not silent:
            for failed in failures:
                printer.print_failed(failed, single)

        if failures:
            all_pass = False
        elif verbose:
            printer.print_info(f"pass '{path}'")

    return all_pass


# ============================================================
# ============================ CLI ===========================
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="svlint",
        description="svlint: SystemVerilog linter",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("files", nargs="*", type=Path, metavar="FILE", help="Source file")
    parser.add_argument(
        "-f", "--filelist", action="append", type=Path, default=[], help="File list"
    )
    parser.add_argument(
        "-d", "--define", dest="defines", action="append", default=[], metavar="IDENT[=TEXT]",
        help="Define",
    )
    parser.add_argument(
        "-i", "--include", dest="includes", action="append", type=Path, default=[],
        help="Include path",
    )
    parser.add_argument(
        "-c", "--config", type=Path, default=Path(DEFAULT_CONFIG_NAME), help="Config file"
    )
    parser.add_argument(
        "-p", "--plugin", dest="plugins", action="append", type=Path, default=[],
        help="Plugin file",
    )
    parser.add_argument("--ignore-include", action="store_true", help="Ignore any include")
    parser.add_argument("-1", dest="single", action="store_true", help="Prints results by single line")
    parser.add_argument("-s", "--silent", action="store_true", help="Suppresses message")
    parser.add_argument("-v", "--verbose", action="store_true", help="Prints verbose message")
    parser.add_argument("--update", action="store_true", help="Updates config")
    parser.add_argument("--example", action="store_true", help="Prints config example")
    return parser


def run_opt(opt: argparse.Namespace) -> bool:
    """Resolve the config, then lint. Handles --example and --update."""
    if opt.example:
        print(Config().to_toml(), end="")
        return True

    config_path = search_config(opt.config)
    if config_path is None:
        sys.stderr.write(f"[svlint] Config file '{opt.config}' is not found. Enable all rules\n")
        config = Config().enable_all()
    else:
        config = load_config(config_path)
        if opt.update:
            write_config(config_path, config)
            return True

    return run_opt_config(opt, config)


def run_opt_config(opt: argparse.Namespace, config: Config, printer: Optional[Printer] = None) -> bool:
    linter = Linter(config)
    for plugin in opt.plugins:
        linter.load(plugin)

    defines: Dict[str, Define] = {}
    for value in opt.defines:
        define = parse_define_arg(value)
        defines[define.identifier] = define

    files = list(opt.files)
    includes = list(opt.includes)
    for path in opt.filelist:
        resolved = parse_filelist(path)
        files.extend(resolved.files)
        includes.extend(resolved.includes)
        defines.update(resolved.defines)

    return run_files(
        linter,
        files,
        defines,
        includes,
        printer=printer,
        ignore_include=opt.ignore_include,
        single=opt.single,
        silent=opt.silent,
        verbose=opt.verbose,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.
      svlint [-c .svlint.toml] [-d DEF] [-i DIR] FILE...
      svlint -f files.f
    Exit code: 0 pass, 1 lint or parse failure, 2 fatal error.
    """
    parser = build_parser()
    opt = parser.parse_args(argv)

    if opt.files and opt.filelist:
        parser.error("argument -f/--filelist: not allowed with positional FILE arguments")
    if not (opt.files or opt.filelist or opt.example or opt.update):
        parser.error("the following arguments are required: FILE or -f/--filelist")

    try:
        passed = run_opt(opt)
    except SvlintError as exc:
        Printer(sys.stderr).print_error(str(exc))
        return 2

    return 0 if passed else 1


if __name__ == "__main__":
    sys.exit(main())
