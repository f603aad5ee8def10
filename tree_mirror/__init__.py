"""Tree Mirror: one-way directory-tree mirroring.

Watches a master folder for created, modified and deleted entries and
replays every change into one or more target folders so each target
stays byte-for-byte identical to the master.
"""

__version__ = "1.0.0"
__app_name__ = "Tree Mirror"
