"""
Provider webhook handling.

Routes inbound provider notifications to the Reconciler.
"""
