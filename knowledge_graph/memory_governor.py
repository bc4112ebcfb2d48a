"""
Memory Governor

Samples process memory, classifies pressure and notifies registered
components when usage turns critical. The expansion engine consults
admit() at every depth-level boundary; start_monitoring() keeps sampling
in the background so idle caches still shed memory.
"""

import asyncio
import gc
import logging
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, Dict, Any, Optional, Tuple

import psutil

from config import settings

logger = logging.getLogger(__name__)


class PressureLevel(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class MemorySample:
    used_bytes: int
    limit_bytes: int
    usage_ratio: float
    usage_percent: float
    level: PressureLevel

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["level"] = self.level.value
        return data


@dataclass
class MemoryComponent:
    """Observer entry: callbacks a component exposes to the governor"""
    name: str
    on_memory_pressure: Optional[Callable[[str], None]] = None
    clear_cache: Optional[Callable[[], None]] = None
    memory_usage: Optional[Callable[[], Dict[str, Any]]] = None


def process_memory_reader(limit_bytes: Optional[int] = None) -> Callable[[], Tuple[int, int]]:
    """
    Build a reader returning (used_bytes, limit_bytes) for this process.

    The limit is MEMORY_LIMIT_BYTES when configured, otherwise total
    physical memory.
    """
    process = psutil.Process()

    def read() -> Tuple[int, int]:
        used = process.memory_info().rss
        limit = limit_bytes or psutil.virtual_memory().total
        return used, limit

    return read


class MemoryGovernor:
    """
    Memory pressure monitor with a component registry.

    Args:
        warning_threshold: usage ratio at which a GC hint is issued
        critical_threshold: usage ratio at which components are told to shed memory
        memory_reader: callable returning (used_bytes, limit_bytes); tests inject stubs
        limit_bytes: explicit limit for the default psutil reader
        emergency_clear: on critical, also clear every component's cache after notifying
    """

    def __init__(
        self,
        warning_threshold: Optional[float] = None,
        critical_threshold: Optional[float] = None,
        memory_reader: Optional[Callable[[], Tuple[int, int]]] = None,
        limit_bytes: Optional[int] = None,
        emergency_clear: Optional[bool] = None,
    ):
        self.warning_threshold = (
            warning_threshold if warning_threshold is not None else settings.MEMORY_WARNING_THRESHOLD
        )
        self.critical_threshold = (
            critical_threshold if critical_threshold is not None else settings.MEMORY_CRITICAL_THRESHOLD
        )
        if not 0 < self.warning_threshold <= self.critical_threshold:
            raise ValueError(
                f"Thresholds must satisfy 0 < warning ({self.warning_threshold}) "
                f"<= critical ({self.critical_threshold})"
            )
        self._read = memory_reader or process_memory_reader(limit_bytes or settings.MEMORY_LIMIT_BYTES)
        self.components: Dict[str, MemoryComponent] = {}
        self.last_sample: Optional[MemorySample] = None
        self.emergency_clear = settings.MEMORY_EMERGENCY_CLEAR if emergency_clear is None else emergency_clear
        self._monitor_task: Optional[asyncio.Task] = None

    @property
    def monitoring(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    def classify(self, usage_ratio: float) -> PressureLevel:
        if usage_ratio >= self.critical_threshold:
            return PressureLevel.CRITICAL
        if usage_ratio >= self.warning_threshold:
            return PressureLevel.WARNING
        return PressureLevel.NORMAL

    def sample(self) -> MemorySample:
        """Read current usage, react to pressure and return the measurement"""
        used, limit = self._read()
        ratio = used / limit if limit > 0 else 1.0
        level = self.classify(ratio)
        sample = MemorySample(
            used_bytes=int(used),
            limit_bytes=int(limit),
            usage_ratio=ratio,
            usage_percent=round(ratio * 100, 2),
            level=level,
        )
        self.last_sample = sample

        if level == PressureLevel.WARNING:
            logger.warning(f"⚠️ Memory usage at {sample.usage_percent}%, requesting garbage collection")
            gc.collect()
        elif level == PressureLevel.CRITICAL:
            logger.error(f"🔥 Critical memory usage at {sample.usage_percent}%, notifying {len(self.components)} component(s)")
            self._notify(level)
            if self.emergency_clear:
                logger.warning("Performing emergency cache clearance")
                self.clear_all()
            gc.collect()

        return sample

    def start_monitoring(self, interval: Optional[float] = None) -> Optional[asyncio.Task]:
        """
        Sample every interval seconds on the running event loop.

        Takes an immediate first sample. No-op when already monitoring or
        when the interval is not positive.
        """
        interval = settings.MEMORY_MONITOR_INTERVAL if interval is None else interval
        if interval <= 0:
            return None
        if self.monitoring:
            return self._monitor_task

        self._monitor_task = asyncio.get_running_loop().create_task(self._monitor(interval))
        logger.info(f"🧠 Memory monitoring started (every {interval}s)")
        return self._monitor_task

    async def stop_monitoring(self) -> None:
        task, self._monitor_task = self._monitor_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Memory monitoring stopped")

    async def _monitor(self, interval: float) -> None:
        while True:
            try:
                self.sample()
            except Exception as exc:
                logger.error(f"Memory sample failed: {exc}")
            await asyncio.sleep(interval)

    def _notify(self, level: PressureLevel) -> None:
        for component in list(self.components.values()):
            if component.on_memory_pressure is None:
                continue
            try:
                component.on_memory_pressure(level.value)
            except Exception as exc:
                logger.error(f"Memory pressure callback for {component.name} failed: {exc}")

    def admit(self, ratio: float) -> bool:
        """True when current usage is below the caller's admission ratio"""
        return self.sample().usage_ratio < ratio

    def register_component(
        self,
        name: str,
        on_memory_pressure: Optional[Callable[[str], None]] = None,
        clear_cache: Optional[Callable[[], None]] = None,
        memory_usage: Optional[Callable[[], Dict[str, Any]]] = None,
    ) -> None:
        if name in self.components:
            logger.debug(f"Replacing memory component registration: {name}")
        self.components[name] = MemoryComponent(
            name=name,
            on_memory_pressure=on_memory_pressure,
            clear_cache=clear_cache,
            memory_usage=memory_usage,
        )

    def unregister_component(self, name: str) -> bool:
        return self.components.pop(name, None) is not None

    def clear_all(self) -> None:
        """Ask every component to drop its caches"""
        for component in list(self.components.values()):
            if component.clear_cache is None:
                continue
            try:
                component.clear_cache()
            except Exception as exc:
                logger.error(f"Cache clear for {component.name} failed: {exc}")

    def stats(self) -> Dict[str, Any]:
        components = {}
        for name, component in self.components.items():
            if component.memory_usage is None:
                components[name] = None
                continue
            try:
                components[name] = component.memory_usage()
            except Exception as exc:
                logger.error(f"Memory usage report for {name} failed: {exc}")
                components[name] = {"error": str(exc)}

        return {
            "last_sample": self.last_sample.to_dict() if self.last_sample else None,
            "warning_threshold": self.warning_threshold,
            "critical_threshold": self.critical_threshold,
            "components": components,
        }
