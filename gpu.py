"""GPU inventory, auto-selection, and busy/locked detection.

Device data comes from a `DeviceInfoProvider`. `SmiDeviceProvider` parses
nvidia-smi CSV output; `StaticDeviceProvider` serves fixed data so the
selection and busy logic can be exercised without hardware.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence

from errors import DeviceBusyAbort, InvalidSelection
from toolchain import progress_write, run_subprocess

# ── Constants ──────────────────────────────────────────────────────────────────

DEFAULT_BUSY_PERCENT = 50.0
DEFAULT_ACTIVE_UTILIZATION_FLOOR = 5.0
DEFAULT_ACTIVE_MEMORY_FLOOR_MB = 512.0
DEFAULT_MEMORY_FLOOR_MB = 2048.0

EXCLUDED_ADAPTER_TOKENS = (
    "microsoft basic",
    "basic render",
    "basic display",
    "remote",
    "virtual",
    "llvmpipe",
    "swiftshader",
    "vmware",
    "virtualbox",
    "hyper-v",
    "parsec",
    "citrix",
)
DISCRETE_VENDOR_TOKENS = ("nvidia", "geforce", "quadro", "tesla", "radeon", "intel arc")
HIGH_END_TOKENS = ("rtx", "titan", "a100", "h100", "l40", "rx 7900", "rx 6900", "arc a770")
GENERIC_VENDOR_TOKENS = ("nvidia", "geforce", "amd", "radeon", "intel")
HIGH_END_WEIGHT = 10
GENERIC_VENDOR_WEIGHT = 3

ADAPTER_QUERY = "index,name,memory.total"
SAMPLE_QUERY = (
    "index,utilization.gpu,utilization.encoder,utilization.decoder,memory.used,memory.total"
)
SAMPLE_ENGINES = ("graphics", "encoder", "decoder")


class DeviceQueryError(RuntimeError):
    pass


@dataclass(frozen=True)
class AdapterInfo:
    index: int
    name: str
    memory_total_mb: Optional[float] = None


@dataclass(frozen=True)
class EngineSample:
    device_index: int
    engine: str
    utilization: float


@dataclass(frozen=True)
class MemorySample:
    device_index: int
    used_mb: float
    limit_mb: Optional[float]


@dataclass(frozen=True)
class DeviceSample:
    engines: list[EngineSample] = field(default_factory=list)
    memory: list[MemorySample] = field(default_factory=list)


@dataclass(frozen=True)
class GpuDevice:
    index: int
    name: str
    utilization: float
    memory_used_mb: float
    memory_limit_mb: Optional[float]

    @property
    def memory_percent(self) -> Optional[float]:
        if not self.memory_limit_mb:
            return None
        return self.memory_used_mb / self.memory_limit_mb * 100.0


@dataclass(frozen=True)
class BusyThresholds:
    busy_percent: float = DEFAULT_BUSY_PERCENT
    active_utilization_floor: float = DEFAULT_ACTIVE_UTILIZATION_FLOOR
    active_memory_floor_mb: float = DEFAULT_ACTIVE_MEMORY_FLOOR_MB
    memory_floor_mb: float = DEFAULT_MEMORY_FLOOR_MB


@dataclass(frozen=True)
class DeviceStatus:
    device: GpuDevice
    active: bool
    busy: bool
    locked: bool
    work_root: Path


class DeviceInfoProvider(Protocol):
    def list_adapters(self) -> list[AdapterInfo]: ...

    def sample(self) -> DeviceSample: ...


# ── Parsing ────────────────────────────────────────────────────────────────────


def _parse_number(value: str) -> Optional[float]:
    text = value.strip()
    if not text or text.startswith("[") or text.upper() == "N/A":
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _csv_rows(text: str, columns: int) -> list[list[str]]:
    rows: list[list[str]] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        parts = [part.strip() for part in line.split(",")]
        if len(parts) != columns:
            raise DeviceQueryError(f"Unexpected nvidia-smi line: {line!r}")
        rows.append(parts)
    return rows


def parse_adapter_csv(text: str) -> list[AdapterInfo]:
    adapters: list[AdapterInfo] = []
    for index_text, name, memory_text in _csv_rows(text, 3):
        index = _parse_number(index_text)
        if index is None:
            raise DeviceQueryError(f"Unparseable device index: {index_text!r}")
        adapters.append(
            AdapterInfo(index=int(index), name=name, memory_total_mb=_parse_number(memory_text))
        )
    return adapters


def parse_sample_csv(text: str) -> DeviceSample:
    engines: list[EngineSample] = []
    memory: list[MemorySample] = []
    for row in _csv_rows(text, 6):
        index = _parse_number(row[0])
        if index is None:
            raise DeviceQueryError(f"Unparseable device index: {row[0]!r}")
        for engine, value in zip(SAMPLE_ENGINES, row[1:4]):
            utilization = _parse_number(value)
            if utilization is not None:
                engines.append(EngineSample(int(index), engine, utilization))
        used = _parse_number(row[4])
        if used is not None:
            memory.append(MemorySample(int(index), used, _parse_number(row[5])))
    return DeviceSample(engines=engines, memory=memory)


# ── Providers ──────────────────────────────────────────────────────────────────


class SmiDeviceProvider:
    def __init__(
        self,
        nvidia_smi: Optional[str],
        runner: Callable[..., subprocess.CompletedProcess[str]] = run_subprocess,
    ) -> None:
        self.nvidia_smi = nvidia_smi
        self.runner = runner

    def _query(self, fields: str) -> str:
        if not self.nvidia_smi:
            raise DeviceQueryError("nvidia-smi is not available.")
        cmd = [self.nvidia_smi, f"--query-gpu={fields}", "--format=csv,noheader,nounits"]
        result = self.runner(cmd, check=False, capture_output=True)
        if result.returncode != 0:
            stderr = result.stderr.strip() if result.stderr else f"exit={result.returncode}"
            raise DeviceQueryError(f"nvidia-smi failed: {stderr}")
        return result.stdout or ""

    def list_adapters(self) -> list[AdapterInfo]:
        return parse_adapter_csv(self._query(ADAPTER_QUERY))

    def sample(self) -> DeviceSample:
        return parse_sample_csv(self._query(SAMPLE_QUERY))


class StaticDeviceProvider:
    def __init__(
        self,
        adapters: Sequence[AdapterInfo],
        sample: Optional[DeviceSample] = None,
    ) -> None:
        self.adapters = list(adapters)
        self._sample = sample or DeviceSample()

    def list_adapters(self) -> list[AdapterInfo]:
        return list(self.adapters)

    def sample(self) -> DeviceSample:
        return self._sample


# ── Inventory and selection ────────────────────────────────────────────────────


def filter_adapters(adapters: Sequence[AdapterInfo]) -> list[AdapterInfo]:
    """Drop virtual, remote, and basic/software display adapters."""
    kept = []
    for adapter in adapters:
        lowered = adapter.name.lower()
        if any(token in lowered for token in EXCLUDED_ADAPTER_TOKENS):
            continue
        kept.append(adapter)
    return kept


def is_discrete(name: str) -> bool:
    lowered = name.lower()
    return any(token in lowered for token in DISCRETE_VENDOR_TOKENS)


def keyword_score(name: str) -> int:
    lowered = name.lower()
    score = 0
    for token in HIGH_END_TOKENS:
        if token in lowered:
            score += HIGH_END_WEIGHT
    for token in GENERIC_VENDOR_TOKENS:
        if token in lowered:
            score += GENERIC_VENDOR_WEIGHT
    return score


def score_adapter(adapter: AdapterInfo) -> tuple[int, int, float]:
    return (
        1 if is_discrete(adapter.name) else 0,
        keyword_score(adapter.name),
        adapter.memory_total_mb or 0.0,
    )


def auto_select_device(provider: DeviceInfoProvider) -> int:
    """Pick the most capable physical adapter, or 0 when the list is unusable."""
    try:
        adapters = filter_adapters(provider.list_adapters())
    except (DeviceQueryError, OSError) as exc:
        progress_write(f"Warning: Could not enumerate GPUs ({exc}); using device 0.")
        return 0

    if not adapters:
        progress_write("Warning: No usable GPU adapters reported; using device 0.")
        return 0

    best = max(adapters, key=lambda adapter: (score_adapter(adapter), -adapter.index))
    return best.index


def aggregate_device(index: int, name: str, sample: DeviceSample) -> GpuDevice:
    """Collapse engine/memory samples for one device; engines combine by max, never sum."""
    utilizations = [e.utilization for e in sample.engines if e.device_index == index]
    memory = [m for m in sample.memory if m.device_index == index]
    limits = [m.limit_mb for m in memory if m.limit_mb]
    return GpuDevice(
        index=index,
        name=name,
        utilization=max(utilizations, default=0.0),
        memory_used_mb=max((m.used_mb for m in memory), default=0.0),
        memory_limit_mb=max(limits) if limits else None,
    )


def list_devices(provider: DeviceInfoProvider) -> list[GpuDevice]:
    adapters = filter_adapters(provider.list_adapters())
    sample = provider.sample()
    return [aggregate_device(adapter.index, adapter.name, sample) for adapter in adapters]


def is_active(device: GpuDevice, thresholds: BusyThresholds) -> bool:
    return (
        device.utilization > thresholds.active_utilization_floor
        or device.memory_used_mb > thresholds.active_memory_floor_mb
    )


def is_busy(device: GpuDevice, thresholds: BusyThresholds) -> bool:
    if device.utilization >= thresholds.busy_percent:
        return True
    memory_percent = device.memory_percent
    if memory_percent is None:
        return device.memory_used_mb >= thresholds.memory_floor_mb
    return memory_percent >= thresholds.busy_percent


def is_locked(work_root: Path) -> bool:
    """A non-empty tagged work root is an advisory claim on the device."""
    return work_root.is_dir() and any(work_root.iterdir())


def check_device(
    provider: DeviceInfoProvider,
    index: int,
    work_root: Path,
    thresholds: BusyThresholds,
) -> DeviceStatus:
    try:
        adapters = provider.list_adapters()
        sample = provider.sample()
    except (DeviceQueryError, OSError) as exc:
        progress_write(f"Warning: GPU telemetry unavailable ({exc}).")
        adapters = []
        sample = DeviceSample()

    names = {adapter.index: adapter.name for adapter in adapters}
    if names and index not in names:
        available = ", ".join(str(i) for i in sorted(names))
        raise InvalidSelection(f"GPU {index} not found; available indexes: {available}.")

    device = aggregate_device(index, names.get(index, f"GPU {index}"), sample)
    return DeviceStatus(
        device=device,
        active=is_active(device, thresholds),
        busy=is_busy(device, thresholds),
        locked=is_locked(work_root),
        work_root=work_root,
    )


def describe_status(status: DeviceStatus) -> str:
    device = status.device
    memory = f"{device.memory_used_mb:.0f} MiB"
    if device.memory_percent is not None:
        memory += f" ({device.memory_percent:.0f}%)"
    state = "active" if status.active else "idle"
    return (
        f"[{device.index}] {device.name}: util {device.utilization:.0f}%, "
        f"memory {memory}, {state}"
    )


def ensure_device_available(
    status: DeviceStatus,
    confirm: Callable[[str], bool],
    *,
    resuming: bool = False,
) -> None:
    """Escalate a busy or claimed device to the operator; raise if declined."""
    reasons = []
    if status.busy:
        reasons.append(f"device is busy ({describe_status(status)})")
    if status.locked and not resuming:
        reasons.append(f"work directory {status.work_root} already holds job data")
    if not reasons:
        return

    summary = "; ".join(reasons)
    if not confirm(f"GPU {status.device.index}: {summary}. Continue anyway?"):
        raise DeviceBusyAbort(f"Aborted: {summary}.")
    progress_write(f"Warning: Continuing on GPU {status.device.index} despite: {summary}")
