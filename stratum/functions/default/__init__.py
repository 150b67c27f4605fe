"""
Default namespace for Stratum functions

Every public callable decorated with ``@function`` in this package is
registered unqualified (``lower``) and qualified (``default.lower``).
"""
