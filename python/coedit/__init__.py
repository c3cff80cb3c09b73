"""
coedit — real-time collaborative field editing for Django Channels.

Presence of editors per field, ephemeral field-content broadcasts, and
projection of remote cursors into pixel coordinates.
"""

__version__ = "0.3.0"
