"""Engine settings and the bundled entitlement catalog."""
