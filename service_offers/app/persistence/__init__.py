"""
Persistence package for the Offers Service.
"""
