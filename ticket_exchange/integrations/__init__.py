"""
External Collaborators

Adapters for the systems the marketplace talks to but does not own:

- processor.py: payment processor contract (charge intents, refunds, stored
  method charges, seller sub-balances) and an in-process simulator
- notifications.py: fire-and-forget in-app notification sink
"""
