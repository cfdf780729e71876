"""Validation of an emitted ncnn model.

Validators are tagged checks over an NcnnModel that return structured
diagnostics. The converter runs them after emission, but they work
standalone too:

    from onnx2ncnn.validation import run_validators
    results = run_validators(model, fail_on=None)
"""

import re
from collections import Counter
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable

from .ir import ConversionError
from .model import MAGIC, NcnnModel

SPLIT_SUFFIX = re.compile(r"^(?P<base>.+)_splitncnn_(?P<k>\d+)$")


class Severity(Enum):
    """Diagnostic severity level.

    ERROR:   The runtime will refuse the model or wire it incorrectly.
    WARNING: Suspicious but not necessarily fatal.
    INFO:    Diagnostic observation.
    """
    ERROR   = auto()
    WARNING = auto()
    INFO    = auto()


@dataclass
class ValidationResult:
    """A single diagnostic from a validator."""
    validator: str
    severity: Severity
    message: str

    def __str__(self) -> str:
        return f"[{self.severity.name}] {self.validator}: {self.message}"


class ValidationError(ConversionError):
    """Raised when validation produces fatal diagnostics."""

    def __init__(self, results: list[ValidationResult], fail_on: Severity) -> None:
        self.results = results
        fatal = [r for r in results if r.severity.value <= fail_on.value]
        msg = f"Validation failed ({len(fatal)} problem(s)):\n"
        msg += "\n".join(f"  {r}" for r in fatal)
        super().__init__(msg)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

@dataclass
class Validator:
    """A named check over an emitted model."""
    name: str
    check: Callable[[NcnnModel], list[ValidationResult]]


VALIDATORS: list[Validator] = []


def register_validator(name: str):
    """Decorator to register a validation function.

    Usage:
        @register_validator("my_check")
        def check_something(model: NcnnModel) -> list[ValidationResult]:
            ...
    """
    def decorator(fn: Callable[[NcnnModel], list[ValidationResult]]):
        VALIDATORS.append(Validator(name=name, check=fn))
        return fn
    return decorator


def run_validators(model: NcnnModel, *,
                   fail_on: Severity | None = Severity.ERROR) -> list[ValidationResult]:
    """Run every registered validator against the model.

    Args:
        model: The emitted model.
        fail_on: Raise ValidationError if any result meets or exceeds
            this severity. Set to None to collect without raising.

    Returns:
        All validation results (errors, warnings, and info).
    """
    results: list[ValidationResult] = []
    for v in VALIDATORS:
        results.extend(v.check(model))

    if fail_on is not None:
        if any(r.severity.value <= fail_on.value for r in results):
            raise ValidationError(results, fail_on)

    return results


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

@register_validator("header")
def check_header(model: NcnnModel) -> list[ValidationResult]:
    """The header counts must describe the lines that follow it."""
    name = "header"
    results = []
    lines = model.param.splitlines()

    if not lines or lines[0] != str(MAGIC):
        results.append(ValidationResult(name, Severity.ERROR, "missing magic line"))
        return results

    try:
        layer_count, blob_count = (int(v) for v in lines[1].split())
    except (IndexError, ValueError):
        results.append(ValidationResult(name, Severity.ERROR,
                                        "malformed header line"))
        return results

    body = [ln for ln in lines[2:] if ln.strip()]
    if layer_count != len(body):
        results.append(ValidationResult(
            name, Severity.ERROR,
            f"layer count {layer_count} but {len(body)} layer lines"))

    produced = {out for layer in model.layers for out in layer.outputs}
    if blob_count != len(produced):
        results.append(ValidationResult(
            name, Severity.ERROR,
            f"blob count {blob_count} but {len(produced)} distinct outputs"))
    return results


@register_validator("split_accounting")
def check_splits(model: NcnnModel) -> list[ValidationResult]:
    """Every Split fans one blob out to a contiguous run of suffixed names."""
    name = "split_accounting"
    results = []
    split_of: Counter = Counter()

    for layer in model.layers:
        if layer.kind != "Split":
            continue
        if len(layer.inputs) != 1:
            results.append(ValidationResult(
                name, Severity.ERROR, f"Split {layer.name} has {len(layer.inputs)} inputs"))
            continue
        src = layer.inputs[0]
        split_of[src] += 1
        expected = [f"{src}_splitncnn_{k}" for k in range(len(layer.outputs))]
        if len(layer.outputs) < 2 or layer.outputs != expected:
            results.append(ValidationResult(
                name, Severity.ERROR,
                f"Split {layer.name} outputs {layer.outputs} do not fan out '{src}'"))

    for src, n in split_of.items():
        if n > 1:
            results.append(ValidationResult(
                name, Severity.ERROR, f"'{src}' is split {n} times"))

    # Each split output is consumed exactly once
    consumed = Counter(inp for layer in model.layers for inp in layer.inputs)
    for layer in model.layers:
        if layer.kind != "Split":
            continue
        for out in layer.outputs:
            if consumed[out] != 1:
                results.append(ValidationResult(
                    name, Severity.ERROR,
                    f"split output '{out}' consumed {consumed[out]} times"))
    return results


@register_validator("unique_producers")
def check_producers(model: NcnnModel) -> list[ValidationResult]:
    """No blob name is written by two layers."""
    counts = Counter(out for layer in model.layers for out in layer.outputs)
    return [
        ValidationResult("unique_producers", Severity.ERROR,
                         f"blob '{blob}' produced by {n} layers")
        for blob, n in counts.items() if n > 1
    ]


@register_validator("dangling_inputs")
def check_dangling(model: NcnnModel) -> list[ValidationResult]:
    """Consumed blobs should be produced by an earlier layer."""
    results = []
    seen: set[str] = set()
    for layer in model.layers:
        for inp in layer.inputs:
            if inp not in seen:
                m = SPLIT_SUFFIX.match(inp)
                hint = f" (split of '{m.group('base')}')" if m else ""
                results.append(ValidationResult(
                    "dangling_inputs", Severity.WARNING,
                    f"{layer.kind} {layer.name} reads '{inp}'{hint} "
                    f"before any layer produces it"))
        seen.update(layer.outputs)
    return results
