"""
Events & Staff

Organizer-owned events, their priced ticket tiers, and the per-event staff
roles (usher, seller, manager, admin, vendor) that gate check-in, cash
sales, proximity payments and reporting.
"""
