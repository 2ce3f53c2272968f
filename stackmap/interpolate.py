"""
Reference scanning and resolution for ``${<type>.<name>.<attr>}`` expressions.
"""
import re
from typing import Any, Callable, List, NamedTuple, Optional

from stackmap.errors import InterpolationError

_EXPR_RE = re.compile(r"\$\{([^}]*)\}")

# Only managed resource types count as references; anything else inside ${}
# (functions, variables) is left to the author.
_REF_RE = re.compile(r"\b((?:docker|random)_[a-z0-9_]+)\.([A-Za-z_][\w-]*)(?:\.([A-Za-z_]\w*))?")

_BARE_REF_RE = re.compile(r"^\s*" + _REF_RE.pattern + r"\s*$")


class Found(NamedTuple):
    path: str
    resource_type: str
    name: str
    attribute: Optional[str]

    @property
    def address(self) -> str:
        return f"{self.resource_type}.{self.name}"


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def scan(val: Any, path: str = "") -> List[Found]:
    """Recursively scan attribute values for cross-resource references."""
    found: List[Found] = []
    if isinstance(val, str):
        for expr in _EXPR_RE.findall(val):
            for m in _REF_RE.finditer(expr):
                found.append(Found(path, m.group(1), m.group(2), m.group(3)))
    elif isinstance(val, list):
        for i, item in enumerate(val):
            found.extend(scan(item, f"{path}[{i}]"))
    elif isinstance(val, dict):
        for k, v in val.items():
            found.extend(scan(v, _join(path, str(k))))
    return found


def parse_dependency(entry: str) -> Optional[str]:
    """
    Turn a depends_on entry into an address.

    Accepts ``docker_volume.data`` as well as the ``${docker_volume.data}``
    form python-hcl2 produces for bare expressions.
    """
    if not isinstance(entry, str):
        return None
    text = entry.strip()
    m = _EXPR_RE.fullmatch(text)
    if m:
        text = m.group(1)
    m = _BARE_REF_RE.match(text)
    if not m:
        return None
    return f"{m.group(1)}.{m.group(2)}"


Lookup = Callable[[str, str], Any]


def resolve(val: Any, lookup: Lookup, source: str = "") -> Any:
    """
    Replace every reference with the value ``lookup(address, attribute)``
    returns. A string made of a single expression keeps the looked-up
    value's type; anything else is substituted as text.
    """
    if isinstance(val, dict):
        return {k: resolve(v, lookup, source) for k, v in val.items()}
    if isinstance(val, list):
        return [resolve(v, lookup, source) for v in val]
    if not isinstance(val, str) or "${" not in val:
        return val

    def _value(expr: str) -> Any:
        m = _BARE_REF_RE.match(expr)
        if not m:
            return None
        address = f"{m.group(1)}.{m.group(2)}"
        attribute = m.group(3) or "id"
        try:
            return lookup(address, attribute)
        except KeyError:
            raise InterpolationError(
                f"output '{attribute}' of '{address}' is not available", address=source
            ) from None

    whole = _EXPR_RE.fullmatch(val)
    if whole:
        if not _BARE_REF_RE.match(whole.group(1)):
            return val
        return _value(whole.group(1))

    def _sub(m: "re.Match") -> str:
        expr = m.group(1)
        if not _BARE_REF_RE.match(expr):
            return m.group(0)
        resolved = _value(expr)
        return "" if resolved is None else str(resolved)

    return _EXPR_RE.sub(_sub, val)
