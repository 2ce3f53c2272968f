"""
Generated values for random_password / random_string resources.

A value is produced once, when its resource is created, and afterwards only
ever read back from state. With a ``secret_seed`` configured the value is
derived from the seed, the resource address and its attributes, so the same
declaration always yields the same value.
"""
import hashlib
import hmac
import json
import secrets
import string
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from stackmap.errors import FatalRuntimeError
from stackmap.runtime.base import Outputs, Runtime

DEFAULT_SPECIAL = "!@#$%&*()-_=+[]{}<>:?"


@dataclass(frozen=True)
class Policy:
    length: int = 16
    upper: bool = True
    lower: bool = True
    numeric: bool = True
    special: bool = True
    override_special: Optional[str] = None
    min_upper: int = 0
    min_lower: int = 0
    min_numeric: int = 0
    min_special: int = 0

    @classmethod
    def from_attributes(cls, attrs: Dict[str, Any]) -> "Policy":
        def _bool(key: str, default: bool) -> bool:
            val = attrs.get(key, default)
            if isinstance(val, str):
                return val.lower() in ("1", "true", "yes")
            return bool(val)

        try:
            return cls(
                length=int(attrs.get("length", 16)),
                upper=_bool("upper", True),
                lower=_bool("lower", True),
                numeric=_bool("numeric", True),
                special=_bool("special", True),
                override_special=attrs.get("override_special"),
                min_upper=int(attrs.get("min_upper", 0)),
                min_lower=int(attrs.get("min_lower", 0)),
                min_numeric=int(attrs.get("min_numeric", 0)),
                min_special=int(attrs.get("min_special", 0)),
            )
        except (TypeError, ValueError) as exc:
            raise FatalRuntimeError(f"invalid secret policy: {exc}") from exc

    def classes(self) -> List[tuple]:
        """(alphabet, minimum) for every enabled character class."""
        special = self.override_special if self.override_special is not None else DEFAULT_SPECIAL
        pairs = [
            (string.ascii_uppercase, self.min_upper, self.upper),
            (string.ascii_lowercase, self.min_lower, self.lower),
            (string.digits, self.min_numeric, self.numeric),
            (special, self.min_special, self.special),
        ]
        return [(alphabet, minimum) for alphabet, minimum, enabled in pairs if enabled and alphabet]

    def validate(self) -> None:
        classes = self.classes()
        if self.length < 1:
            raise FatalRuntimeError("secret length must be at least 1")
        if not classes:
            raise FatalRuntimeError("secret policy enables no character classes")
        if sum(minimum for _, minimum in classes) > self.length:
            raise FatalRuntimeError("secret minimum counts exceed its length")


class _SystemSource:
    def randbelow(self, n: int) -> int:
        return secrets.randbelow(n)


class _DerivedSource:
    """HMAC-SHA256 in counter mode, consumed with rejection sampling."""

    def __init__(self, key: bytes, message: bytes):
        self._key = key
        self._message = message
        self._counter = 0
        self._buffer = b""

    def _byte(self) -> int:
        if not self._buffer:
            block = self._counter.to_bytes(8, "big") + self._message
            self._buffer = hmac.new(self._key, block, hashlib.sha256).digest()
            self._counter += 1
        b, self._buffer = self._buffer[0], self._buffer[1:]
        return b

    def randbelow(self, n: int) -> int:
        # n never exceeds 256 for the alphabets in use
        limit = 256 - (256 % n)
        while True:
            b = self._byte()
            if b < limit:
                return b % n


def _compose(policy: Policy, source) -> str:
    classes = policy.classes()
    chars: List[str] = []
    for alphabet, minimum in classes:
        chars.extend(alphabet[source.randbelow(len(alphabet))] for _ in range(minimum))

    pool = "".join(alphabet for alphabet, _ in classes)
    while len(chars) < policy.length:
        chars.append(pool[source.randbelow(len(pool))])

    # Fisher-Yates so the minimum-count characters are not all up front
    for i in range(len(chars) - 1, 0, -1):
        j = source.randbelow(i + 1)
        chars[i], chars[j] = chars[j], chars[i]
    return "".join(chars)


def fingerprint(value: str) -> str:
    return "sha256:" + hashlib.sha256(value.encode()).hexdigest()[:12]


class ValueGenerator:
    def __init__(self, seed: Optional[str] = None):
        self.seed = seed

    def value_for(
        self,
        address: str,
        policy: Policy,
        stored: Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Return ``stored`` unchanged when the resource already has a value,
        otherwise generate one for it.
        """
        if stored is not None:
            return stored
        policy.validate()
        if self.seed:
            message = json.dumps(
                {"address": address, "attributes": attributes or {}}, sort_keys=True, default=str
            ).encode()
            return _compose(policy, _DerivedSource(self.seed.encode(), message))
        return _compose(policy, _SystemSource())


class RandomProvider(Runtime):
    """Materialises random_* resources entirely in state."""

    name = "random"
    prefixes = ("random_",)

    def __init__(self, generator: Optional[ValueGenerator] = None):
        self.generator = generator or ValueGenerator()

    def create(self, resource_type: str, name: str, attributes: Dict[str, Any]) -> Outputs:
        value = self.generator.value_for(
            f"{resource_type}.{name}", Policy.from_attributes(attributes), attributes=attributes,
        )
        return {"id": fingerprint(value), "result": value}

    def read(self, resource_type: str, name: str, outputs: Outputs) -> Optional[Outputs]:
        return dict(outputs) if outputs.get("result") is not None else None

    def update(
        self,
        resource_type: str,
        name: str,
        attributes: Dict[str, Any],
        outputs: Outputs,
        changed: List[str],
    ) -> Outputs:
        value = self.generator.value_for(
            f"{resource_type}.{name}",
            Policy.from_attributes(attributes),
            stored=outputs.get("result"),
            attributes=attributes,
        )
        return {"id": fingerprint(value), "result": value}

    def delete(self, resource_type: str, name: str, outputs: Outputs, attributes: Dict[str, Any]) -> None:
        return None
