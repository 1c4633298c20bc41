"""
Vault Auto-Tagger

Analyzes media items in a Vault library with local ONNX models and an
optional remote vision model, resolves the proposed labels against the
library's tag vocabulary, and queues the results for human review.
"""

__version__ = "1.0.0"
__author__ = "Vault Auto-Tagger Team"
