"""Allowlisted router actions."""

from hotspot_relay.actions.handler import ActionHandler, ActionKind, ActionRequest, ActionResult

__all__ = ["ActionHandler", "ActionKind", "ActionRequest", "ActionResult"]
