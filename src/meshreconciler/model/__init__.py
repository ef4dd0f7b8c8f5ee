"""
The MODEL layer contains pure data structures.
It has NO knowledge of the import or reconcile workflows.
It deals with element tables, the mesh database, and snapshot I/O.
"""
