"""Test package marker.

Making `tests/` a package ensures fully-qualified module names and prevents
`import file mismatch` collection errors.
"""
