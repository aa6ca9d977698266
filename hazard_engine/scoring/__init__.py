"""
Hazard scoring: data model, normalization and aggregation.

This package provides:
- Readings, scores and the assessment result model
- The provider-scale → 0–100 normalization table
- The concurrent aggregation engine and its pure scoring functions
"""
