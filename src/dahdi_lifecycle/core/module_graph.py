# src/dahdi_lifecycle/core/module_graph.py
"""
Static description of the kernel modules and services making up the DAHDI
hardware stack, and the order in which they are torn down and brought up.
Pure data: no I/O happens here.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional

from ..utils.config import LifecycleConfig
from .interfaces import OrderingViolation


class UnitKind(str, Enum):
    """How a unit is controlled on the host"""
    KERNEL_MODULE = "KERNEL_MODULE"
    SERVICE = "SERVICE"
    DRIVER_SET = "DRIVER_SET"
    WAN_STACK = "WAN_STACK"


@dataclass(frozen=True)
class ModuleSpec:
    """A named kernel or service unit of the hardware stack"""
    name: str
    kind: UnitKind
    stop_order: int
    start_order: int
    dependents: FrozenSet[str] = field(default_factory=frozenset)
    removable: bool = True
    target: Optional[str] = None
    requires_tool: Optional[str] = None

    @property
    def control_name(self) -> str:
        """Module or service name passed to the control tool"""
        return self.target or self.name


class ModuleGraph:
    """
    Validated set of units.
    Every dependent must have a lower stop order and a higher start order than
    the unit it depends on; a graph violating that is rejected at construction.
    """
    def __init__(self, units: Iterable[ModuleSpec]):
        self._units: Dict[str, ModuleSpec] = {}
        for unit in units:
            if unit.name in self._units:
                raise OrderingViolation(f"Duplicate unit in module graph: {unit.name}")
            self._units[unit.name] = unit
        self._validate()

    def _validate(self) -> None:
        for unit in self._units.values():
            for dependent_name in unit.dependents:
                dependent = self._units.get(dependent_name)
                if dependent is None:
                    raise OrderingViolation(
                        f"Unit {unit.name} names unknown dependent {dependent_name}"
                    )
                if dependent.stop_order >= unit.stop_order:
                    raise OrderingViolation(
                        f"{dependent_name} must stop before {unit.name} "
                        f"(stop order {dependent.stop_order} >= {unit.stop_order})"
                    )
                if dependent.start_order <= unit.start_order:
                    raise OrderingViolation(
                        f"{dependent_name} must start after {unit.name} "
                        f"(start order {dependent.start_order} <= {unit.start_order})"
                    )

    def __contains__(self, name: str) -> bool:
        return name in self._units

    def __len__(self) -> int:
        return len(self._units)

    def get(self, name: str) -> ModuleSpec:
        return self._units[name]

    def teardown_order(self) -> List[ModuleSpec]:
        """Units in stop order, dependents first"""
        return sorted(self._units.values(), key=lambda u: (u.stop_order, u.name))

    def bringup_order(self) -> List[ModuleSpec]:
        """Units in start order, independent leaves first"""
        return sorted(self._units.values(), key=lambda u: (u.start_order, u.name))

    def dependents_of(self, name: str) -> List[ModuleSpec]:
        """Units that must be stopped before the named unit"""
        return [self._units[d] for d in sorted(self._units[name].dependents)]


WAN_UNIT = "wanrouter"
ECHOCAN_UNIT = "dahdi_echocan_mg2"
SERVICE_UNIT = "dahdi-service"
DRIVERS_UNIT = "dahdi-drivers"
BASE_UNIT = "dahdi"


def default_graph(config: Optional[LifecycleConfig] = None, wanrouter_tool: str = "wanrouter") -> ModuleGraph:
    """
    The DAHDI stack: optional Wanpipe stack on top, echo canceller, the dahdi
    service with its hardware drivers, and the base dahdi kernel module.
    """
    config = config or LifecycleConfig()
    return ModuleGraph([
        ModuleSpec(
            name=WAN_UNIT,
            kind=UnitKind.WAN_STACK,
            stop_order=10,
            start_order=50,
            target=config.wan_service,
            requires_tool=wanrouter_tool,
        ),
        ModuleSpec(
            name=ECHOCAN_UNIT,
            kind=UnitKind.KERNEL_MODULE,
            stop_order=20,
            start_order=40,
            dependents=frozenset({WAN_UNIT}),
            target=config.echocan_module,
        ),
        ModuleSpec(
            name=SERVICE_UNIT,
            kind=UnitKind.SERVICE,
            stop_order=30,
            start_order=30,
            dependents=frozenset({WAN_UNIT, ECHOCAN_UNIT}),
            target=config.base_service,
        ),
        ModuleSpec(
            name=DRIVERS_UNIT,
            kind=UnitKind.DRIVER_SET,
            stop_order=40,
            start_order=20,
            dependents=frozenset({WAN_UNIT, ECHOCAN_UNIT, SERVICE_UNIT}),
            removable=False,
        ),
        ModuleSpec(
            name=BASE_UNIT,
            kind=UnitKind.KERNEL_MODULE,
            stop_order=50,
            start_order=10,
            dependents=frozenset({WAN_UNIT, ECHOCAN_UNIT, SERVICE_UNIT, DRIVERS_UNIT}),
            target=config.base_module,
        ),
    ])
