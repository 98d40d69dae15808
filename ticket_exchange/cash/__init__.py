"""
Cash Sales

Staff-recorded door sales. Each sale mints a ticket (handed over by NFC
transfer token, email or in person) and a cash transaction that the
organizer later reconciles as collected or disputed. The platform fee is
charged to the organizer's stored payment method and tracked separately.
"""
