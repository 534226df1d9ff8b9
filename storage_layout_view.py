# storage_layout_view.py
# Read a contract's storage slots at one block and print every variable of a
# compiler storage layout (forge inspect / solc / Hardhat artifact) decoded.
#
# Usage:
#   RPC_URL=<rpc> python storage_layout_view.py --address 0x... --layout ./storage-layout.json --slots 2

import os, sys, json, time, argparse
from typing import Any, Dict, List, Optional, Sequence, Union

from dotenv import load_dotenv
from web3 import Web3

from storage_layout_decoder import (
    DecodedValue,
    MalformedLayoutError,
    StorageLayout,
    WordReader,
    decode,
    parse_layout,
    slot_key,
    to_hex,
    WORD_SIZE,
)

DEFAULT_RPC_URL = "https://mainnet.infura.io/v3/your_api_key"
BLOCK_TAGS = ("latest", "earliest", "pending", "safe", "finalized")

NOTES = (
    "- Dynamic arrays, mappings and strings are printed as raw slots; their real location is keccak(slot).",
    "- Complex nested structs / packed smaller-than-32-byte fields are best-effort decoded.",
    "- For highest accuracy, pass the exact storage layout generated by `forge inspect <Contract> storage-layout` or a Hardhat artifact.",
)
RULE = "-" * 61


def checksum(addr: str) -> str:
    if not Web3.is_address(addr):
        print("❌ Invalid Ethereum address."); sys.exit(2)
    return Web3.to_checksum_address(addr)


def parse_block(s: str) -> Union[str, int]:
    s = s.strip().lower()
    if s in BLOCK_TAGS:
        return s
    try:
        v = int(s, 0)  # decimal or 0xHEX
    except ValueError:
        print(f"❌ Invalid block: {s} (number or one of {', '.join(BLOCK_TAGS)})"); sys.exit(2)
    if v < 0:
        print("❌ Block number must be ≥ 0."); sys.exit(2)
    return v


def load_layout_file(path: str) -> StorageLayout:
    if not os.path.exists(path):
        print(f"❌ Layout file not found: {path}"); sys.exit(1)
    try:
        with open(path, encoding="utf-8") as f:
            obj = json.load(f)
    except (OSError, ValueError) as e:
        print(f"❌ Could not read layout {path}: {e}"); sys.exit(2)
    try:
        return parse_layout(obj)
    except MalformedLayoutError as e:
        print(f"❌ Malformed layout {path}: {e}"); sys.exit(2)


def connect(url: str, timeout: float = 20) -> Web3:
    w3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": timeout}))
    if not w3.is_connected():
        print("❌ Failed to connect to RPC. Provide --rpc or set RPC_URL in environment."); sys.exit(1)
    return w3


def make_reader(w3: Web3, block_identifier: Union[str, int] = "latest") -> WordReader:
    def read_word(address: str, slot: int) -> bytes:
        position = to_hex(slot_key(slot))
        value = w3.eth.get_storage_at(address, position, block_identifier=block_identifier)
        return bytes(value).rjust(WORD_SIZE, b"\x00")
    return read_word


def _render_decoded(r: DecodedValue) -> str:
    if r.error is not None:
        return f"⚠️ {r.error}"
    if isinstance(r.decoded, dict):
        return json.dumps(r.decoded)
    return str(r.decoded)


def render(results: Sequence[DecodedValue]) -> str:
    lines: List[str] = ["Variable mapping:"]
    for r in results:
        lines.append(RULE)
        lines.append(f"name: {r.label}")
        lines.append(f"type: {r.type}")
        lines.append(f"slot: {r.slot} (offset bytes: {r.offset}, size: {r.size})")
        for i, w in enumerate(r.raw_words):
            tag = "0" if i == 0 else f"+{i}"
            lines.append(f"raw slot[{tag}]: {to_hex(w)}")
        lines.append(f"decoded: {_render_decoded(r)}")
    lines.append(RULE)
    lines.append("")
    lines.append("Notes:")
    lines.extend(NOTES)
    return "\n".join(lines)


def write_json(path: str, results: Sequence[DecodedValue], meta: Optional[Dict[str, Any]] = None) -> None:
    payload = dict(meta or {})
    payload["variables"] = [r.as_dict() for r in results]
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
    os.replace(tmp, path)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Decode a contract's storage using a compiler storage layout.")
    ap.add_argument("--address", required=True, help="Contract address to inspect (0x...)")
    ap.add_argument("--layout", required=True, help="Path to storage-layout.json (or an artifact with storageLayout)")
    ap.add_argument("--rpc", help="RPC URL (default from RPC_URL env / .env)")
    ap.add_argument("--slots", type=int, default=1, help="Slots to dump per variable, base slot included (default 1)")
    ap.add_argument("--block", default="latest", help="Block number or tag every read is pinned to (default latest)")
    ap.add_argument("--json", help="Also write decoded results to this JSON file")
    ap.add_argument("--timeout", type=float, default=20, help="RPC request timeout in seconds (default 20)")
    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    rpc = args.rpc or os.getenv("RPC_URL", DEFAULT_RPC_URL)
    if "your_api_key" in rpc:
        print("⚠️ RPC_URL still uses Infura placeholder — replace with a real key.")
    if args.slots < 1:
        print(f"⚠️ --slots {args.slots} < 1; reading the base slot only.")

    address = checksum(args.address)
    block = parse_block(str(args.block))
    layout_path = os.path.abspath(args.layout)
    layout = load_layout_file(layout_path)

    w3 = connect(rpc, args.timeout)
    chain_id = w3.eth.chain_id
    print(f"🌐 Connected: chainId={chain_id}, block={block}")
    try:
        code = w3.eth.get_code(address, block_identifier=block)
    except Exception as e:
        print(f"❌ Block {block} unavailable on this RPC (archive node required?): {e}"); sys.exit(2)
    if not code:
        print("⚠️ Target has no contract code (EOA?) — storage will likely read as zero.")

    print(f"📦 Inspecting contract {address}")
    print(f"🗂️ Layout: {layout_path} ({len(layout.variables)} variables)")
    print("")

    t0 = time.monotonic()
    results = decode(layout, make_reader(w3, block), address, args.slots)
    print(render(results))

    failed = sum(1 for r in results if r.error is not None)
    if failed:
        print(f"\n⚠️ {failed}/{len(results)} variables could not be read; see entries above.")

    if args.json:
        write_json(args.json, results, {
            "address": address,
            "chain_id": chain_id,
            "block": block,
            "layout": layout_path,
        })
        print(f"📝 Wrote {len(results)} variables → {args.json}")

    print(f"⏱️ Elapsed: {time.monotonic() - t0:.2f}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())
