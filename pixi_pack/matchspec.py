"""Conda match specs and version ordering.

Only the subset needed to re-check an already solved environment is
implemented: a match spec selects packages by name, version constraint and
build string glob, which is what ``depends`` and ``constrains`` entries use.

Version ordering follows conda:

- an optional ``N!`` epoch and ``+local`` suffix;
- components split on ``.`` and ``_`` and then into runs of digits and
  letters, with a leading ``0`` inserted when a component starts with a letter;
- ``dev`` sorts before any other string, strings before numbers, ``post``
  after everything;
- missing components compare as ``0`` (``1.1 == 1.1.0``).
"""

from dataclasses import dataclass
import fnmatch
import functools
import itertools
import re

from pixi_pack.errors import MatchSpecError
from pixi_pack.records import PackageRecord

_Atom = tuple[int, int | str]

_ZERO_ATOM: _Atom = (2, 0)
_ZERO_COMPONENT: tuple[_Atom, ...] = (_ZERO_ATOM,)

_ATOM_RE: re.Pattern[str] = re.compile(r"[0-9]+|[^0-9]+")
_OPERATOR_RE: re.Pattern[str] = re.compile(r"^(==|!=|<=|>=|~=|<|>|=)?(.*)$")
_NAME_RE: re.Pattern[str] = re.compile(r"^([^\s=<>!~\[(]+)\s*(.*)$")
_VERSION_TOKEN_RE: re.Pattern[str] = re.compile(r"[(),|]|[^(),|]+")
_BRACKET_RE: re.Pattern[str] = re.compile(r"^(.*)\[(.*)\]\s*$")
_BRACKET_ITEM_RE: re.Pattern[str] = re.compile(
    r"""\s*([a-z_]+)\s*=\s*(?:'([^']*)'|"([^"]*)"|([^,\s]*))\s*,?"""
)


def _atom(text: str) -> _Atom:
    if text.isdigit() is True:
        return (2, int(text))
    if text == "post":
        return (3, 0)
    if text == "dev":
        return (0, "")
    return (1, text)


def _split_components(text: str) -> tuple[tuple[_Atom, ...], ...]:
    components: list[tuple[_Atom, ...]] = []
    for part in text.replace("_", ".").split("."):
        if len(part) == 0:
            raise ValueError("empty version component")
        atoms: list[_Atom] = [_atom(a) for a in _ATOM_RE.findall(part)]
        if atoms[0][0] != 2:
            atoms.insert(0, _ZERO_ATOM)
        components.append(tuple(atoms))
    return tuple(components)


def _compare_components(
    a: tuple[tuple[_Atom, ...], ...],
    b: tuple[tuple[_Atom, ...], ...],
) -> int:
    for ca, cb in itertools.zip_longest(a, b, fillvalue=_ZERO_COMPONENT):
        for xa, xb in itertools.zip_longest(ca, cb, fillvalue=_ZERO_ATOM):
            if xa != xb:
                return -1 if xa < xb else 1
    return 0


@functools.total_ordering
class Version:
    """A conda version with conda's ordering rules.

    :ivar text: Original version string.
    """

    __slots__ = ("text", "epoch", "components", "local")

    def __init__(self, text: str) -> None:
        self.text: str = text
        normalized: str = text.strip().lower()
        if len(normalized) == 0:
            raise ValueError("empty version string")

        self.epoch: int = 0
        if "!" in normalized:
            epoch_text, normalized = normalized.split("!", 1)
            if epoch_text.isdigit() is False:
                raise ValueError(f"invalid epoch in version {text!r}")
            self.epoch = int(epoch_text)

        local_text: str | None = None
        if "+" in normalized:
            normalized, local_text = normalized.split("+", 1)

        self.components: tuple[tuple[_Atom, ...], ...] = _split_components(normalized)
        self.local: tuple[tuple[_Atom, ...], ...] = ()
        if local_text is not None:
            self.local = _split_components(local_text)

    def _compare(self, other: "Version") -> int:
        if self.epoch != other.epoch:
            return -1 if self.epoch < other.epoch else 1
        c: int = _compare_components(self.components, other.components)
        if c != 0:
            return c
        return _compare_components(self.local, other.local)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Version) is False:
            return NotImplemented
        return self._compare(other) == 0

    def __lt__(self, other: "Version") -> bool:
        return self._compare(other) < 0

    def __repr__(self) -> str:
        return f"Version({self.text!r})"

    def startswith(self, prefix: "Version") -> bool:
        """Check whether this version lies below ``prefix`` (``prefix.*``)."""

        if self.epoch != prefix.epoch:
            return False
        if len(self.components) < len(prefix.components):
            padded = self.components + (_ZERO_COMPONENT,) * (len(prefix.components) - len(self.components))
        else:
            padded = self.components
        for ca, cb in zip(padded, prefix.components):
            if _compare_components((ca,), (cb,)) != 0:
                return False
        return True


@dataclass(frozen=True, slots=True)
class _Constraint:
    """One ``<operator><version>`` term of a version spec."""

    operator: str
    version: Version | None

    def matches(self, candidate: Version) -> bool:
        if self.operator == "*":
            return True
        v: Version | None = self.version
        if v is None:
            return False
        if self.operator == "==":
            return candidate == v
        if self.operator == "!=":
            return candidate != v
        if self.operator == "<":
            return candidate < v
        if self.operator == "<=":
            return candidate <= v
        if self.operator == ">":
            return candidate > v
        if self.operator == ">=":
            return candidate >= v
        if self.operator == "=*":
            return candidate.startswith(v)
        if self.operator == "!=*":
            return candidate.startswith(v) is False
        if self.operator == "~=":
            if candidate < v:
                return False
            head: Version = Version(".".join(v.text.split(".")[0:-1]) or v.text)
            return candidate.startswith(head)
        raise AssertionError(f"Unhandled operator: {self.operator}")


def _parse_constraint(text: str, spec: str) -> _Constraint:
    term: str = text.strip()
    if term == "*" or term == "":
        return _Constraint(operator="*", version=None)

    m = _OPERATOR_RE.match(term)
    if m is None:
        raise MatchSpecError(spec, f"cannot parse version constraint {term!r}")
    operator: str | None = m.group(1)
    version_text: str = m.group(2).strip()

    is_glob: bool = version_text.endswith("*") is True
    if is_glob is True:
        version_text = version_text.rstrip("*").rstrip(".")
        if len(version_text) == 0:
            return _Constraint(operator="*", version=None)

    if "*" in version_text:
        raise MatchSpecError(spec, f"unsupported wildcard position in {term!r}")

    try:
        version: Version = Version(version_text)
    except ValueError as e:
        raise MatchSpecError(spec, str(e)) from e

    if operator is None or operator == "=" or operator == "==":
        if is_glob is True or operator == "=":
            return _Constraint(operator="=*", version=version)
        return _Constraint(operator="==", version=version)
    if operator == "!=" and is_glob is True:
        return _Constraint(operator="!=*", version=version)
    # Ordering operators ignore a trailing ``.*``.
    return _Constraint(operator=operator, version=version)


@dataclass(frozen=True, slots=True)
class _AllOf:
    terms: tuple["_VersionNode", ...]

    def matches(self, candidate: Version) -> bool:
        return all(t.matches(candidate) for t in self.terms)


@dataclass(frozen=True, slots=True)
class _AnyOf:
    terms: tuple["_VersionNode", ...]

    def matches(self, candidate: Version) -> bool:
        return any(t.matches(candidate) for t in self.terms)


_VersionNode = _Constraint | _AllOf | _AnyOf


class _VersionParser:
    """Recursive descent over ``|`` (lowest), ``,`` and parentheses."""

    def __init__(self, text: str, spec: str) -> None:
        self._tokens: list[str] = [t.strip() for t in _VERSION_TOKEN_RE.findall(text) if len(t.strip()) > 0]
        self._pos: int = 0
        self._spec: str = spec

    def parse(self) -> _VersionNode:
        node: _VersionNode = self._any_of()
        if self._pos != len(self._tokens):
            raise MatchSpecError(self._spec, f"unexpected {self._tokens[self._pos]!r} in version constraint")
        return node

    def _peek(self) -> str | None:
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return None

    def _any_of(self) -> _VersionNode:
        terms: list[_VersionNode] = [self._all_of()]
        while self._peek() == "|":
            self._pos += 1
            terms.append(self._all_of())
        if len(terms) == 1:
            return terms[0]
        return _AnyOf(tuple(terms))

    def _all_of(self) -> _VersionNode:
        terms: list[_VersionNode] = [self._atom()]
        while self._peek() == ",":
            self._pos += 1
            terms.append(self._atom())
        if len(terms) == 1:
            return terms[0]
        return _AllOf(tuple(terms))

    def _atom(self) -> _VersionNode:
        token: str | None = self._peek()
        if token is None or token in (",", "|", ")"):
            raise MatchSpecError(self._spec, "expected a version constraint")
        self._pos += 1
        if token != "(":
            return _parse_constraint(token, self._spec)
        node: _VersionNode = self._any_of()
        if self._peek() != ")":
            raise MatchSpecError(self._spec, "unbalanced parentheses in version constraint")
        self._pos += 1
        return node


@dataclass(frozen=True, slots=True)
class VersionSpec:
    """A version constraint: ``,`` (and) binds tighter than ``|`` (or); parentheses group."""

    text: str
    root: _VersionNode

    @classmethod
    def parse(cls, text: str, *, spec: str | None = None) -> "VersionSpec":
        source: str = spec if spec is not None else text
        if len(text.strip()) == 0:
            return cls(text=text, root=_Constraint(operator="*", version=None))
        return cls(text=text, root=_VersionParser(text, source).parse())

    def matches(self, version: str) -> bool:
        try:
            candidate: Version = Version(version)
        except ValueError:
            return False
        return self.root.matches(candidate)


@dataclass(frozen=True, slots=True)
class MatchSpec:
    """A parsed conda match spec.

    :ivar name: Package name (lower-case).
    :ivar version: Version constraint, if any.
    :ivar build: Build string glob, if any.
    :ivar build_number: Exact build number, if any.
    :ivar text: Original spec string.
    """

    name: str
    version: VersionSpec | None
    build: str | None
    build_number: int | None
    text: str

    @property
    def is_virtual(self) -> bool:
        """Virtual packages (``__glibc``, ``__unix``) are provided by the host."""

        return self.name.startswith("__") is True

    def matches(self, record: PackageRecord) -> bool:
        """Check whether ``record`` satisfies this spec."""

        if record.name.lower() != self.name:
            return False
        if self.version is not None and self.version.matches(record.version) is False:
            return False
        if self.build is not None and fnmatch.fnmatchcase(record.build, self.build) is False:
            return False
        if self.build_number is not None and record.build_number != self.build_number:
            return False
        return True


def _normalize_spacing(text: str) -> str:
    out: str = re.sub(r"\s*([,|()])\s*", r"\1", text)
    out = re.sub(r"(==|!=|<=|>=|~=|<|>)\s+", r"\1", out)
    return out


def parse_match_spec(text: str) -> MatchSpec:
    """Parse a conda match spec string.

    Accepted forms include ``name``, ``name >=1.2,<2``, ``name 1.2.* py*``,
    ``name=1.2``, ``name=1.2=py_0``, ``name==1.2``,
    ``channel::name`` and ``name[version='>=1', build='py*']``.

    :param text: Spec string.
    :returns: Parsed match spec.
    :raises MatchSpecError: If the string cannot be parsed.
    """

    s: str = text.split("#", 1)[0].strip()
    if len(s) == 0:
        raise MatchSpecError(text, "empty spec")

    brackets: dict[str, str] = {}
    bm = _BRACKET_RE.match(s)
    if bm is not None:
        s = bm.group(1).strip()
        for item in _BRACKET_ITEM_RE.finditer(bm.group(2)):
            value: str = next(g for g in item.group(2, 3, 4) if g is not None)
            brackets[item.group(1)] = value

    if "::" in s:
        s = s.split("::", 1)[1]

    nm = _NAME_RE.match(s)
    if nm is None:
        raise MatchSpecError(text, "missing package name")
    name: str = nm.group(1).lower()
    rest: str = _normalize_spacing(nm.group(2).strip())

    version_text: str | None = None
    build: str | None = None
    if len(rest) > 0:
        if rest.startswith("=") is True and rest.startswith("==") is False:
            parts: list[str] = rest[1:].split("=", 1)
            if len(parts) == 2 and parts[1].startswith("=") is False:
                version_text = parts[0]
                build = parts[1]
            else:
                version_text = rest
        else:
            tokens: list[str] = rest.split()
            if len(tokens) > 2:
                raise MatchSpecError(text, "too many whitespace-separated parts")
            version_text = tokens[0]
            if len(tokens) == 2:
                build = tokens[1]
            elif version_text[0] not in "=<>!~(" and "*" not in version_text:
                if "," not in version_text and "|" not in version_text:
                    # ``name 1.2`` is fuzzy, like ``name=1.2``.
                    version_text = "=" + version_text

    if "version" in brackets:
        version_text = brackets["version"]
    if "build" in brackets:
        build = brackets["build"]
    build_number: int | None = None
    if "build_number" in brackets:
        if brackets["build_number"].isdigit() is False:
            raise MatchSpecError(text, f"invalid build_number {brackets['build_number']!r}")
        build_number = int(brackets["build_number"])

    version: VersionSpec | None = None
    if version_text is not None:
        version = VersionSpec.parse(version_text, spec=text)

    return MatchSpec(
        name=name,
        version=version,
        build=build,
        build_number=build_number,
        text=text,
    )
