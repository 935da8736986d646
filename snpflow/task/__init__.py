"""Task graph, scheduling, and stage definitions for the snpflow pipeline.

This module contains the workflow engine (stage graph, partitioner, scatter/gather,
branch composition, and resume ledger) built on Luigi tasks, together with the
stage factories of the variant discovery pipeline.
"""
