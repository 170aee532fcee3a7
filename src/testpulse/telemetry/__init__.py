# src/testpulse/telemetry/__init__.py
"""Event pipeline: queue, sender, policy and the adapter-facing dispatcher."""

from testpulse.telemetry.dispatcher import EventDispatcher
from testpulse.telemetry.factory import create_dispatcher, create_sender
from testpulse.telemetry.filtering import EventPolicy, create_event_policy
from testpulse.telemetry.hookspecs import hookimpl
from testpulse.telemetry.protocols import SenderProtocol
from testpulse.telemetry.queue import EventQueue
from testpulse.telemetry.sender import HttpEventSender

__all__ = [
    "EventDispatcher",
    "EventPolicy",
    "EventQueue",
    "HttpEventSender",
    "SenderProtocol",
    "create_dispatcher",
    "create_event_policy",
    "create_sender",
    "hookimpl",
]
