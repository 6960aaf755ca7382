from .pipeline import collect_filled_fields, seal_envelope
from .stamping import FilledField, apply_fields, flatten_pdf

__all__ = ["FilledField", "apply_fields", "collect_filled_fields", "flatten_pdf", "seal_envelope"]
