"""
Identity

Users are authenticated by an external identity provider that issues
signed bearer tokens. This package verifies those tokens, provisions the
local profile on first sight, and wires pending favor offers and referral
attribution to the new account.
"""
