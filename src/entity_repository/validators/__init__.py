from .config_validators import to_uppercase, to_lowercase, normalize_mutation_kinds, MUTATION_KINDS

__all__ = ["to_uppercase", "to_lowercase", "normalize_mutation_kinds", "MUTATION_KINDS"]
