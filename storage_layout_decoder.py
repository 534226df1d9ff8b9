"""Decode a contract's raw storage words using a compiler storage layout.

Pure decoding only; importing this module has no side effects and nothing here
prints, exits or talks to an RPC node. Words come in through a reader callable.
"""
# storage_layout_decoder.py
# Layout records -> fetch base slot (+ context words) -> typed DecodedValue per variable.

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from web3 import Web3

WORD_SIZE = 32
MAX_SLOT = 2**256

# (address, slot) -> 32-byte word
WordReader = Callable[[str, int], bytes]

_HEX_SLOT = re.compile(r"0[xX][0-9a-fA-F]+")
_DEC_SLOT = re.compile(r"[0-9]+")
_BYTES_N = re.compile(r"bytes([0-9]+)")


class LayoutDecodeError(Exception):
    pass


class MalformedSlotError(LayoutDecodeError, ValueError):
    pass


class MalformedLayoutError(LayoutDecodeError):
    pass


class WordFetchError(LayoutDecodeError):
    def __init__(self, slot: int, message: str, fetched: Tuple[bytes, ...] = ()):
        super().__init__(f"read of slot {hex(slot)} failed: {message}")
        self.slot = slot
        self.fetched = fetched


@dataclass(frozen=True)
class VariableDeclaration:
    label: str
    type_ref: str
    slot: Union[int, str]
    offset: int = 0
    size: int = WORD_SIZE


@dataclass(frozen=True)
class MemberDeclaration:
    label: str
    type_ref: str
    offset: int = 0
    slot: Optional[Union[int, str]] = None


@dataclass(frozen=True)
class TypeDescriptor:
    encoding: str = ""
    label: str = ""
    byte_width: Optional[int] = None
    members: Tuple[MemberDeclaration, ...] = ()
    base: str = ""


@dataclass(frozen=True)
class StorageLayout:
    variables: Tuple[VariableDeclaration, ...]
    types: Dict[str, TypeDescriptor] = field(default_factory=dict)


@dataclass(frozen=True)
class UnresolvedReference:
    """
    Storage that exists but needs more computation than a single slot read:
    mappings, dynamic arrays and unsupported encodings. Static arrays also get
    one (kind "static_array") instead of an elementary decode of their first
    element's word, so "uint256[3]" is not reported as a single uint256.
    """
    kind: str
    slot: int
    raw: bytes
    reason: str

    def __str__(self) -> str:
        return f"<{self.kind.replace('_', ' ')} - {self.reason}. raw slot({format_slot(self.slot)}) = {to_hex(self.raw)}>"


@dataclass(frozen=True)
class DecodedValue:
    label: str
    type: str
    slot: str
    offset: int
    size: int
    raw_words: Tuple[bytes, ...]
    decoded: Union[str, Dict[str, Any], UnresolvedReference, None]
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        decoded = self.decoded
        if isinstance(decoded, UnresolvedReference):
            decoded = str(decoded)
        return {
            "label": self.label,
            "type": self.type,
            "slot": self.slot,
            "offset": self.offset,
            "bytes": self.size,
            "raw_slots": [to_hex(w) for w in self.raw_words],
            "decoded": decoded,
            "error": self.error,
        }


def to_hex(b: bytes) -> str:
    return "0x" + b.hex()


def format_slot(slot: int) -> str:
    return hex(slot)


def parse_slot(raw: Union[int, str]) -> int:
    # bool is an int subclass; a layout saying `"slot": true` is malformed
    if isinstance(raw, bool):
        raise MalformedSlotError(f"Invalid slot: {raw!r}")
    if isinstance(raw, int):
        v = raw
    elif isinstance(raw, str):
        s = raw.strip()
        if _HEX_SLOT.fullmatch(s):
            v = int(s[2:], 16)
        elif _DEC_SLOT.fullmatch(s):
            v = int(s, 10)
        else:
            raise MalformedSlotError(f"Invalid slot: {raw!r} (use decimal or 0xHEX)")
    else:
        raise MalformedSlotError(f"Invalid slot: {raw!r}")
    if v < 0 or v >= MAX_SLOT:
        raise MalformedSlotError(f"Slot out of range [0, 2^256): {raw!r}")
    return v


def slot_key(slot: int) -> bytes:
    """32-byte big-endian, left-zero-padded slot position for the transport."""
    return slot.to_bytes(WORD_SIZE, "big")


# ---------------------------------------------------------------------------
# Layout parsing
# ---------------------------------------------------------------------------

def _as_int(value: Any, default: Optional[int], what: str) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedLayoutError(f"{what} is not an integer: {value!r}")


def _parse_member(m: Dict[str, Any], owner: str) -> MemberDeclaration:
    if not isinstance(m, dict):
        raise MalformedLayoutError(f"Member of {owner} is not an object: {m!r}")
    if "label" not in m or "type" not in m:
        raise MalformedLayoutError(f"Member of {owner} needs 'label' and 'type': {m!r}")
    return MemberDeclaration(
        label=str(m["label"]),
        type_ref=str(m["type"]),
        offset=_as_int(m.get("offset"), 0, f"{owner}.{m['label']} offset"),
        slot=m.get("slot"),
    )


def _parse_type(ref: str, t: Dict[str, Any]) -> TypeDescriptor:
    if not isinstance(t, dict):
        raise MalformedLayoutError(f"Type entry {ref} is not an object")
    members = t.get("members") or []
    if not isinstance(members, list):
        raise MalformedLayoutError(f"Type entry {ref} members must be a list")
    return TypeDescriptor(
        encoding=str(t.get("encoding") or ""),
        label=str(t.get("label") or ""),
        byte_width=_as_int(t.get("numberOfBytes"), None, f"{ref} numberOfBytes"),
        members=tuple(_parse_member(m, ref) for m in members),
        base=str(t.get("base") or ""),
    )


def _parse_variable(entry: Dict[str, Any]) -> VariableDeclaration:
    if not isinstance(entry, dict):
        raise MalformedLayoutError(f"Storage entry is not an object: {entry!r}")
    missing = [k for k in ("label", "type", "slot") if k not in entry]
    if missing:
        raise MalformedLayoutError(f"Storage entry missing {', '.join(missing)}: {entry!r}")
    label = str(entry["label"])
    return VariableDeclaration(
        label=label,
        type_ref=str(entry["type"]),
        slot=entry["slot"],
        offset=_as_int(entry.get("offset"), 0, f"{label} offset"),
        size=_as_int(entry.get("bytes"), WORD_SIZE, f"{label} bytes"),
    )


def parse_layout(obj: Any) -> StorageLayout:
    """
    Accepts the layout object itself ({"storage": [...], "types": {...}}) or
    a build artifact that nests it under "storageLayout".
    """
    if isinstance(obj, dict) and "storage" not in obj and isinstance(obj.get("storageLayout"), dict):
        obj = obj["storageLayout"]
    if not isinstance(obj, dict) or not isinstance(obj.get("storage"), list):
        raise MalformedLayoutError("Layout must contain a 'storage' list")
    types = obj.get("types")
    if types is None:
        types = {}
    if not isinstance(types, dict):
        raise MalformedLayoutError("Layout 'types' must be an object")
    return StorageLayout(
        variables=tuple(_parse_variable(e) for e in obj["storage"]),
        types={str(k): _parse_type(str(k), v) for k, v in types.items()},
    )


# ---------------------------------------------------------------------------
# Elementary decoding
# ---------------------------------------------------------------------------

def _normalize_label(label: str) -> str:
    s = label.strip().lower()
    return s[2:] if s.startswith("t_") else s


def _fixed_bytes_width(label: str) -> Optional[int]:
    m = _BYTES_N.fullmatch(label)
    if m and 1 <= int(m.group(1)) <= WORD_SIZE:
        return int(m.group(1))
    return None


def _decode_address(label: str, word: bytes) -> str:
    return Web3.to_checksum_address(to_hex(word[-20:]))


def _decode_uint(label: str, word: bytes) -> str:
    return str(int.from_bytes(word, "big"))


def _decode_int(label: str, word: bytes) -> str:
    # best-effort: no two's-complement sign recovery
    return str(int.from_bytes(word, "big"))


def _decode_bool(label: str, word: bytes) -> str:
    return "true" if int.from_bytes(word, "big") == 1 else "false"


def _decode_fixed_bytes(label: str, word: bytes) -> str:
    # right-most N bytes (Solidity itself stores bytesN left-aligned)
    return to_hex(word[WORD_SIZE - _fixed_bytes_width(label):])


# First match wins; labels are normalized (lower case, no "t_" prefix).
ELEMENTARY_DECODERS: Tuple[Tuple[Callable[[str], bool], Callable[[str, bytes], str]], ...] = (
    (lambda t: t.startswith("address"), _decode_address),
    (lambda t: t.startswith("uint"), _decode_uint),
    (lambda t: t.startswith("int"), _decode_int),
    (lambda t: t.startswith("bool"), _decode_bool),
    (lambda t: _fixed_bytes_width(t) is not None, _decode_fixed_bytes),
)


def decode_elementary(type_label: str, word: bytes) -> str:
    label = _normalize_label(type_label)
    for matches, decoder in ELEMENTARY_DECODERS:
        if matches(label):
            return decoder(label, word)
    return to_hex(word)


# ---------------------------------------------------------------------------
# Variable decoding
# ---------------------------------------------------------------------------

def _decode_struct(desc: TypeDescriptor, types: Dict[str, TypeDescriptor], word: bytes) -> Dict[str, Any]:
    # every member is decoded from the struct's first word; no sub-slot extraction
    values: Dict[str, Any] = {}
    for m in desc.members:
        m_type = types.get(m.type_ref)
        if m_type is None:
            values[m.label] = {"note": "unknown type", "raw": to_hex(word)}
        elif m_type.byte_width and m_type.byte_width <= WORD_SIZE:
            values[m.label] = decode_elementary(m_type.label or m.type_ref, word)
        else:
            values[m.label] = {"note": "complex type - raw", "raw": to_hex(word)}
    return values


def _decode_typed(desc: TypeDescriptor, types: Dict[str, TypeDescriptor], type_ref: str,
                  slot: int, word: bytes) -> Union[str, Dict[str, Any], UnresolvedReference]:
    if desc.encoding == "inplace":
        if desc.members:
            return _decode_struct(desc, types, word)
        if desc.base:
            return UnresolvedReference(
                "static_array", slot, word,
                f"elements of {desc.base} are laid out from this slot on; see the context slots")
        return decode_elementary(desc.label or type_ref, word)
    if desc.encoding == "mapping":
        return UnresolvedReference(
            "mapping", slot, word,
            "values live at keccak256(key . slot), keys are not enumerable")
    if desc.encoding == "dynamic_array":
        return UnresolvedReference(
            "dynamic_array", slot, word,
            "this slot holds the length, elements start at keccak256(slot)")
    return UnresolvedReference(
        "unsupported", slot, word,
        f"unsupported encoding {desc.encoding or '(none)'}")


def fetch_words(reader: WordReader, address: str, slot: int, count: int) -> List[bytes]:
    words: List[bytes] = []
    for i in range(max(1, count)):
        s = slot + i
        try:
            word = bytes(reader(address, s))
        except Exception as e:
            raise WordFetchError(s, str(e), tuple(words)) from e
        if len(word) > WORD_SIZE:
            raise WordFetchError(s, f"non-32B storage word ({len(word)} bytes)", tuple(words))
        words.append(word.rjust(WORD_SIZE, b"\x00"))
    return words


def decode_variable(variable: VariableDeclaration, types: Dict[str, TypeDescriptor],
                    reader: WordReader, address: str, context_words: int = 1) -> DecodedValue:
    desc = types.get(variable.type_ref)
    type_name = (desc.label if desc and desc.label else variable.type_ref)
    slot_display = str(variable.slot)
    try:
        slot = parse_slot(variable.slot)
        slot_display = format_slot(slot)
        words = fetch_words(reader, address, slot, context_words)
    except MalformedSlotError as e:
        return DecodedValue(variable.label, type_name, slot_display, variable.offset,
                            variable.size, (), None, str(e))
    except WordFetchError as e:
        # words read before the failing one stay visible
        return DecodedValue(variable.label, type_name, slot_display, variable.offset,
                            variable.size, e.fetched, None, str(e))

    if desc is None:
        decoded: Union[str, Dict[str, Any], UnresolvedReference] = decode_elementary(variable.type_ref, words[0])
    else:
        decoded = _decode_typed(desc, types, variable.type_ref, slot, words[0])
    return DecodedValue(variable.label, type_name, slot_display, variable.offset,
                        variable.size, tuple(words), decoded)


def decode(layout: StorageLayout, reader: WordReader, address: str, context_words: int = 1) -> List[DecodedValue]:
    """
    Decode every variable in layout order. A variable whose slot is malformed or
    whose read fails comes back with `error` set; the rest are still decoded.
    """
    return [decode_variable(v, layout.types, reader, address, context_words) for v in layout.variables]
