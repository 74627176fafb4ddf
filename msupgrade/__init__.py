"""Microservice upgrade lifecycle (msupgrade).

Single-node upgrade/rollback engine for microservice definitions that a node
has installed from the exchange. It covers:
 - upgrade eligibility checks
 - an explicit upgrade phase state machine with stall detection
 - version resolution against the exchange with idempotent change detection
 - rollback target lookup
 - compilation of node attributes into a policy document

The decision functions are small and side-effect free so they can be audited
on their own; the reconciler wires them to the store and the exchange.
"""
