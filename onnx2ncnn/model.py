"""Target model: ncnn layer list plus the weight blob.

The param file is line oriented:

    7767517
    [layer count] [blob count]
    [kind] [name] [input count] [output count] [inputs...] [outputs...] [k=v...]

Kind and name are left-justified in fields of width 16 and 24. Integer
parameters are written as plain decimals, float parameters with six
decimals. The .bin file is the concatenation of raw little-endian
payloads in the order the layers consume them.
"""

from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path

MAGIC = 7767517

ParamValue = int | float


def format_param(value: ParamValue) -> str:
    """Render one parameter value the way the param reader expects it."""
    if isinstance(value, float):
        return f"{value:f}"
    return str(int(value))


@dataclass
class Layer:
    """One line of the param file."""
    kind: str
    name: str
    inputs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    # Numerically keyed parameters, written in insertion order
    params: dict[int, ParamValue] = field(default_factory=dict)

    def render(self) -> str:
        parts = [f"{self.kind:<16} {self.name:<24} {len(self.inputs)} {len(self.outputs)}"]
        parts.extend(self.inputs)
        parts.extend(self.outputs)
        parts.extend(f"{k}={format_param(v)}" for k, v in self.params.items())
        return " ".join(parts)

    @classmethod
    def parse(cls, line: str) -> "Layer":
        """Parse a rendered param line back into a Layer."""
        tokens = line.split()
        if len(tokens) < 4:
            raise ValueError(f"Malformed param line: {line!r}")
        kind, name = tokens[0], tokens[1]
        n_in, n_out = int(tokens[2]), int(tokens[3])
        inputs = tokens[4:4 + n_in]
        outputs = tokens[4 + n_in:4 + n_in + n_out]
        params: dict[int, ParamValue] = {}
        for tok in tokens[4 + n_in + n_out:]:
            key, _, raw = tok.partition("=")
            params[int(key)] = float(raw) if "." in raw else int(raw)
        return cls(kind, name, inputs, outputs, params)


class NcnnModel:
    """Emitted layers and the weight blob of one conversion."""

    def __init__(self, layers: list[Layer], blob: bytes) -> None:
        self.layers = layers
        self.blob = bytes(blob)

    # --- Counts ---

    @property
    def layer_count(self) -> int:
        return len(self.layers)

    @property
    def blob_count(self) -> int:
        """Distinct blob names produced by any layer, split outputs included."""
        return len({name for layer in self.layers for name in layer.outputs})

    # --- Rendering ---

    @property
    def param(self) -> str:
        """The full param file text."""
        lines = [str(MAGIC), f"{self.layer_count} {self.blob_count}"]
        lines.extend(layer.render() for layer in self.layers)
        return "\n".join(lines) + "\n"

    @property
    def param_bytes(self) -> bytes:
        return self.param.encode("utf-8")

    def summary(self) -> str:
        """Human-readable summary of the emitted model."""
        kinds = Counter(layer.kind for layer in self.layers)
        kinds_str = ", ".join(f"{k}: {n}" for k, n in kinds.most_common())
        return "\n".join([
            f"ncnn model: {self.layer_count} layers, {self.blob_count} blobs, "
            f"{len(self.blob):,} weight bytes",
            f"  Layers:  {kinds_str}",
        ])

    # --- Serialization ---

    def write(self, param_path: str | Path, bin_path: str | Path) -> None:
        """Write the param text and the weight blob to explicit paths."""
        Path(param_path).write_bytes(self.param_bytes)
        Path(bin_path).write_bytes(self.blob)

    def save(self, path: str | Path) -> None:
        """Save to disk: {path}.param (layers) + {path}.bin (weights).

        Args:
            path: Stem/prefix - writes {path}.param and {path}.bin.
        """
        path = Path(path)
        self.write(path.with_suffix(".param"), path.with_suffix(".bin"))

    @classmethod
    def from_param(cls, text: str, blob: bytes = b"") -> "NcnnModel":
        """Rebuild a model from param text (header counts are recomputed)."""
        lines = [ln for ln in text.splitlines() if ln.strip()]
        if not lines or lines[0].strip() != str(MAGIC):
            raise ValueError("param text does not start with the ncnn magic")
        return cls([Layer.parse(ln) for ln in lines[2:]], blob)
