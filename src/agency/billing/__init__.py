"""Billing module -- packages, work units, milestone triggers, and payment alerts.

Provides Pydantic schemas (Package, Milestone, WorkUnit, BillingAlert), the
BillingAlertSink interface, MilestoneTriggerEngine for completion-driven
milestone evaluation, and the package, work-unit and payments services.
"""
