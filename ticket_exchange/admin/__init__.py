"""
Platform Administration

Maintenance sweeps for wall-clock deadlines, the consistency auditor for
denormalised counters, referral configuration and the reconciliation
queue. Restricted to platform administrators.
"""
