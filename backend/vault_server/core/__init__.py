"""
Core primitives: identifiers, crypto, roles, states, timestamps and JSON maps.

These modules have no storage or network dependencies and are shared by
every other layer.
"""
