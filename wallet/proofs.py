"""
Proof calldata.

Real proof generation is not wired in: the pipeline always submits the
fixed Groth16 calldata below. ``parse_calldata`` is what the executor uses
to turn it into contract arguments.
"""

import json
import re
from dataclasses import dataclass
from typing import List, Tuple

from wallet.errors import MalformedPayload

# TODO: replace with calldata produced by the circuit once prover integration lands
PLACEHOLDER_CALLDATA = (
    "[0x280ae4ad4c8c58ad7692b66a12d2b30a5c99186e4822124e11ca49bf8285d611, "
    "0x185aac88d540a116143caef7cf31e72f02ad81100dcd0d39c2162b57fa077b18],"
    "[[0x10b36ed6db66bdd1daf23ec15b5f03421e5d8aaa7576fd2460144c7670e1b932, "
    "0x1193d4e899d73b062a2b8591e16c0944c1e99c52a62635ed1c0185d6004fa7aa],"
    "[0x2cdc1c1f373f4f7ce57379f494176086b701d0985d7cb5994d4c8a6d5e6dbddc, "
    "0x072fd6c6bca259a1f64a6f6d300706bac64ec83f34a95d2282cf98e33adf0d4b]],"
    "[0x012e66fcbaf82ddf81a834a5475458c773ff6dab1d3934f15c4f7ed6185a309e, "
    "0x089a4ee10ce655f485ee6da990599ad22c845613ef6e7b051c1d2a8ccc011b99],"
    "[0x0000000000000000000000000000000000000000000000000000000000000002,"
    "0x0000000000000000000000000000000000000000000000000000000000000004,"
    "0x0000000000000000000000000000000000000000000000000000000000000001,"
    "0x1d5ac1f31407018b7d413a4f52c8f74463b30e6ac2238220ad8b254de4eaa3a2,"
    "0x1e1de8a908826c3f9ac2e0ceee929ecd0caf3b99b3ef24523aaab796a6f733c4]"
)

_HEX_TOKEN = re.compile(r"0x[0-9a-fA-F]+")


@dataclass(frozen=True)
class ProofCalldata:
    """Groth16 verifier arguments: a, b, c and public inputs."""

    a: Tuple[int, int]
    b: Tuple[Tuple[int, int], Tuple[int, int]]
    c: Tuple[int, int]
    inputs: Tuple[int, ...]


def _pair(value, name: str) -> Tuple[int, int]:
    if not isinstance(value, list) or len(value) != 2:
        raise MalformedPayload(f"Proof element {name} must have 2 entries")
    return int(value[0], 16), int(value[1], 16)


def parse_calldata(text: str) -> ProofCalldata:
    """
    Parse ``[a0,a1],[[b00,b01],[b10,b11]],[c0,c1],[inputs...]``.

    Raises:
        MalformedPayload: anything that does not have that shape
    """
    if not isinstance(text, str) or not text.strip():
        raise MalformedPayload("Proof calldata is empty")

    quoted = _HEX_TOKEN.sub(lambda m: f'"{m.group(0)}"', text)
    try:
        parts = json.loads(f"[{quoted}]")
    except json.JSONDecodeError as e:
        raise MalformedPayload(f"Proof calldata is not parseable: {e.msg}") from e

    if not isinstance(parts, list) or len(parts) != 4:
        raise MalformedPayload("Proof calldata must contain a, b, c and inputs")

    a, b, c, inputs = parts
    if not isinstance(b, list) or len(b) != 2:
        raise MalformedPayload("Proof element b must have 2 rows")
    if not isinstance(inputs, list) or not all(isinstance(x, str) for x in inputs):
        raise MalformedPayload("Public inputs must be a list of hex values")

    try:
        return ProofCalldata(
            a=_pair(a, "a"),
            b=(_pair(b[0], "b[0]"), _pair(b[1], "b[1]")),
            c=_pair(c, "c"),
            inputs=tuple(int(x, 16) for x in inputs),
        )
    except (TypeError, ValueError) as e:
        raise MalformedPayload(f"Proof calldata holds a non-hex value: {e}") from e


def public_inputs(calldata: ProofCalldata) -> List[str]:
    return [hex(x) for x in calldata.inputs]
