# src/dahdi_lifecycle/api/models.py

from pydantic import BaseModel, Field
from typing import List, Optional

from ..core.interfaces import (
    DriftClassification,
    Intent,
    LifecyclePhase,
    PhaseOutcome,
    SpanPolicy,
)

class CommandSummary(BaseModel):
    """Last external command of a phase"""
    command: str
    exit_code: int
    timed_out: bool = False
    stderr_tail: str = ""

class PhaseResultModel(BaseModel):
    """Outcome of one attempt at one lifecycle phase"""
    phase: LifecyclePhase
    outcome: PhaseOutcome
    detail: str = ""
    attempt: int = 1
    command: Optional[CommandSummary] = None

class DeviceModel(BaseModel):
    """Discovered telephony card"""
    bus_address: str
    driver_candidates: List[str] = Field(default_factory=list)
    vendor_product: str = ""
    description: str = ""
    driver_loaded: bool = False
    span: Optional[int] = None

class SpanAssignmentModel(BaseModel):
    """Binding of a logical slot to a physical device"""
    slot_index: int
    device_ref: str
    source: str
    spans: List[int] = Field(default_factory=list)
    base_channel: Optional[int] = None

class ReconciliationModel(BaseModel):
    """Classified difference between generated and active configuration"""
    classification: DriftClassification
    delta: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    skipped: bool = False
    installed: bool = False

class LifecycleReportModel(BaseModel):
    """Final result of one lifecycle request"""
    intent: Intent
    force: bool = False
    initial_phase: LifecyclePhase
    final_phase: LifecyclePhase
    succeeded: bool
    failed_phase: Optional[LifecyclePhase] = None
    error: Optional[str] = None
    software_only: bool = False
    span_policy: Optional[SpanPolicy] = None
    devices: List[DeviceModel] = Field(default_factory=list)
    assignments: List[SpanAssignmentModel] = Field(default_factory=list)
    reconciliation: Optional[ReconciliationModel] = None
    advisories: List[str] = Field(default_factory=list)
    phases: List[PhaseResultModel] = Field(default_factory=list)
    last_command: Optional[CommandSummary] = None

class SystemStatusModel(BaseModel):
    """Observed state of the hardware stack and the PBX"""
    phase: LifecyclePhase
    modules: List[str] = Field(default_factory=list)
    pbx_reachable: bool
    channel_module_loaded: Optional[bool] = None
