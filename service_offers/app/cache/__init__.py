"""
Cache package for the Offers Service.

Holds rule snapshots in a short-lived in-process cache backed by an
optional Redis layer. Every admin write invalidates both.
"""
