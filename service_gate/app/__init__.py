"""
Gate application package.
"""
