"""
Favor Offers

Organizer-initiated ticket offers addressed by email: comps, gifts and
discounted seats. Offers reach users who have not signed up yet and are
linked to them on provisioning.
"""
