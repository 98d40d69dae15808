"""
Aggregate Reads

Non-mutating views consumed by organizer dashboards: tier availability,
cash summaries per event and per seller, and per-event sales and check-in
analytics.
"""
