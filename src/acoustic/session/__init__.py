"""Acquisition session module.

Components:
    config: SessionConfig, AcquisitionMode and ConvergencePolicy
    interfaces: Protocols for the compute dispatcher, geometry and log sink
    session: AcquisitionSession state machine (realtime and reference modes)
"""

from src.acoustic.session.config import (
    WORKGROUP_SIZE,
    AcquisitionMode,
    ConvergencePolicy,
    SessionConfig,
    SessionConfigError,
    workgroups_for,
)
from src.acoustic.session.interfaces import (
    ComputeDispatcher,
    DispatchParams,
    GeometrySource,
    LogSink,
    Readback,
)
from src.acoustic.session.session import AcquisitionSession, SessionMode

__all__ = [
    # config
    "AcquisitionMode",
    "ConvergencePolicy",
    "SessionConfig",
    "SessionConfigError",
    "WORKGROUP_SIZE",
    "workgroups_for",
    # interfaces
    "ComputeDispatcher",
    "DispatchParams",
    "GeometrySource",
    "LogSink",
    "Readback",
    # session
    "AcquisitionSession",
    "SessionMode",
]
