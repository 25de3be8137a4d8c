import json


class Variant:
    """Describes one derivative image: a source identifier, the operations
    applied to it, and the format it is encoded in.

    ``key_material`` covers all three and is what variant cache keys are
    hashed from. The string form is for display only.
    """

    def __init__(self, identifier, operations=(), output_format=None):
        self.identifier = str(identifier)
        self.operations = tuple(str(op) for op in operations)
        self.output_format = output_format

    @property
    def media_type(self):
        if self.output_format is None:
            return None
        return self.output_format.preferred_media_type

    @property
    def key_material(self):
        # Field boundaries stay unambiguous, so ("a_b",) and ("a", "b") differ.
        format_name = self.output_format.name if self.output_format is not None else None
        return json.dumps(
            [self.identifier, list(self.operations), format_name],
            ensure_ascii=False,
            separators=(",", ":"),
        )

    def __str__(self):
        parts = [self.identifier, *self.operations]
        if self.output_format is not None:
            parts.append(self.output_format.name)
        return "_".join(parts)

    def __eq__(self, other):
        if not isinstance(other, Variant):
            return NotImplemented
        return (self.identifier, self.operations, self.output_format) == (
            other.identifier,
            other.operations,
            other.output_format,
        )

    def __hash__(self):
        return hash((self.identifier, self.operations, self.output_format))

    def __repr__(self):
        return f"<Variant {self}>"
