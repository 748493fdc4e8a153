"""
tfcontroller Test Suite

Unit tests for the backend drivers, the resolver, the execution pieces and
the reconciliation state machine, run against an in-memory cluster.
"""
