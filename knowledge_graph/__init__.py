"""
Code knowledge graph: structural indexing, embeddings and hybrid retrieval.
"""

__version__ = "0.1.0"
