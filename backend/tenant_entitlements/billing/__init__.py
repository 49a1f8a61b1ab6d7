"""
Billing integration: webhook event model, subscription state machine and
the reconciler that applies provider events to subscriptions.
"""
