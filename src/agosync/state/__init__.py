"""Write path layer.

Edits are applied to the in-memory recipe projection immediately and
coalesced per entity before they reach the durable store.
"""
