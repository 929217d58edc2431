"""AI-assisted ingredient normalization (free-text ingredient lines -> {amount, unit, name}).

The worker depends only on the `NormalizationService` protocol; the LLM-backed
implementation lives in `ingredients.py`.
"""
