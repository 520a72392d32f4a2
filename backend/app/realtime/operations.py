"""
Text operations for collaborative editing.

An operation walks the whole document from left to right. Components:
- positive int: retain that many characters
- non-empty str: insert the string
- negative int: delete that many characters

Two operations made against the same document state can be transformed
against each other so that applying them in either order converges.
"""
from typing import List, Optional, Sequence, Tuple, Union

Component = Union[int, str]


class OperationError(ValueError):
    """Raised for malformed operations or operations that do not fit a document."""


def _is_retain(component: Optional[Component]) -> bool:
    return isinstance(component, int) and component > 0


def _is_insert(component: Optional[Component]) -> bool:
    return isinstance(component, str)


def _is_delete(component: Optional[Component]) -> bool:
    return isinstance(component, int) and component < 0


class TextOperation:
    """A sequence of retain/insert/delete components over a whole document."""

    def __init__(self):
        self.ops: List[Component] = []
        self.base_length = 0
        self.target_length = 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TextOperation):
            return NotImplemented
        return (
            self.ops == other.ops
            and self.base_length == other.base_length
            and self.target_length == other.target_length
        )

    def __repr__(self) -> str:
        return f"TextOperation({self.ops!r})"

    # ---------- builders ----------

    def retain(self, n: int) -> "TextOperation":
        if n < 0:
            raise OperationError("retain expects a non-negative count")
        if n == 0:
            return self
        self.base_length += n
        self.target_length += n
        if self.ops and _is_retain(self.ops[-1]):
            self.ops[-1] += n
        else:
            self.ops.append(n)
        return self

    def insert(self, text: str) -> "TextOperation":
        if not isinstance(text, str):
            raise OperationError("insert expects a string")
        if text == "":
            return self
        self.target_length += len(text)
        if self.ops and _is_insert(self.ops[-1]):
            self.ops[-1] += text
        elif self.ops and _is_delete(self.ops[-1]):
            # Canonical order: an insert next to a delete goes first
            if len(self.ops) >= 2 and _is_insert(self.ops[-2]):
                self.ops[-2] += text
            else:
                self.ops.insert(len(self.ops) - 1, text)
        else:
            self.ops.append(text)
        return self

    def delete(self, n: int) -> "TextOperation":
        if n < 0:
            raise OperationError("delete expects a non-negative count")
        if n == 0:
            return self
        self.base_length += n
        if self.ops and _is_delete(self.ops[-1]):
            self.ops[-1] -= n
        else:
            self.ops.append(-n)
        return self

    # ---------- queries ----------

    def is_noop(self) -> bool:
        return not self.ops or (len(self.ops) == 1 and _is_retain(self.ops[0]))

    def apply(self, text: str) -> str:
        """Apply the operation to `text` and return the new document."""
        if len(text) != self.base_length:
            raise OperationError(
                f"operation expects a document of length {self.base_length}, got {len(text)}"
            )
        parts: List[str] = []
        index = 0
        for op in self.ops:
            if _is_retain(op):
                parts.append(text[index:index + op])
                index += op
            elif _is_insert(op):
                parts.append(op)
            else:
                index -= op
        return "".join(parts)

    def transform_position(self, position: int) -> int:
        """Map an offset in the base document to the matching offset after the operation."""
        old = 0
        shift = 0
        for op in self.ops:
            if old > position:
                break
            if _is_retain(op):
                old += op
            elif _is_insert(op):
                shift += len(op)
            else:
                count = -op
                shift -= min(count, position - old)
                old += count
        return position + shift

    # ---------- wire format ----------

    def to_json(self) -> List[Component]:
        return list(self.ops)

    @classmethod
    def from_json(cls, components: Sequence[Component]) -> "TextOperation":
        if not isinstance(components, (list, tuple)):
            raise OperationError("operation must be a list of components")
        operation = cls()
        for component in components:
            if isinstance(component, bool):
                raise OperationError(f"invalid component: {component!r}")
            if isinstance(component, int):
                if component > 0:
                    operation.retain(component)
                elif component < 0:
                    operation.delete(-component)
                else:
                    raise OperationError("zero-length component")
            elif isinstance(component, str):
                if not component:
                    raise OperationError("empty insert component")
                operation.insert(component)
            else:
                raise OperationError(f"invalid component: {component!r}")
        return operation

    @classmethod
    def from_splice(cls, length: int, position: int, delete_count: int = 0, text: str = "") -> "TextOperation":
        """Build the operation replacing `delete_count` characters at `position` with `text`."""
        if position < 0 or position > length:
            raise OperationError("position out of range")
        if delete_count < 0 or position + delete_count > length:
            raise OperationError("delete range out of range")
        return (
            cls()
            .retain(position)
            .delete(delete_count)
            .insert(text)
            .retain(length - position - delete_count)
        )

    @classmethod
    def replace_all(cls, current: str, new: str) -> "TextOperation":
        """Operation turning `current` into `new`, keeping the shared prefix and suffix."""
        prefix = 0
        limit = min(len(current), len(new))
        while prefix < limit and current[prefix] == new[prefix]:
            prefix += 1
        suffix = 0
        while (
            suffix < limit - prefix
            and current[len(current) - 1 - suffix] == new[len(new) - 1 - suffix]
        ):
            suffix += 1
        return cls.from_splice(
            len(current),
            prefix,
            len(current) - prefix - suffix,
            new[prefix:len(new) - suffix],
        )

    # ---------- transformation ----------

    @staticmethod
    def transform(a: "TextOperation", b: "TextOperation") -> Tuple["TextOperation", "TextOperation"]:
        """
        Transform two concurrent operations.

        Returns (a', b') such that b' applied after a equals a' applied after b.
        Inserts at the same position keep a's text first.
        """
        if a.base_length != b.base_length:
            raise OperationError("both operations must start from the same document")

        a_prime = TextOperation()
        b_prime = TextOperation()
        ops1, ops2 = list(a.ops), list(b.ops)
        i1 = i2 = 0
        op1 = ops1[0] if ops1 else None
        op2 = ops2[0] if ops2 else None

        def next1():
            nonlocal i1
            i1 += 1
            return ops1[i1] if i1 < len(ops1) else None

        def next2():
            nonlocal i2
            i2 += 1
            return ops2[i2] if i2 < len(ops2) else None

        while op1 is not None or op2 is not None:
            if _is_insert(op1):
                a_prime.insert(op1)
                b_prime.retain(len(op1))
                op1 = next1()
                continue
            if _is_insert(op2):
                a_prime.retain(len(op2))
                b_prime.insert(op2)
                op2 = next2()
                continue

            if op1 is None or op2 is None:
                raise OperationError("operations are not compatible")

            if _is_retain(op1) and _is_retain(op2):
                if op1 > op2:
                    minl = op2
                    op1 = op1 - op2
                    op2 = next2()
                elif op1 == op2:
                    minl = op2
                    op1 = next1()
                    op2 = next2()
                else:
                    minl = op1
                    op2 = op2 - op1
                    op1 = next1()
                a_prime.retain(minl)
                b_prime.retain(minl)
            elif _is_delete(op1) and _is_delete(op2):
                # Both deleted the same text; nothing left to do for that span
                if -op1 > -op2:
                    op1 = op1 - op2
                    op2 = next2()
                elif op1 == op2:
                    op1 = next1()
                    op2 = next2()
                else:
                    op2 = op2 - op1
                    op1 = next1()
            elif _is_delete(op1) and _is_retain(op2):
                if -op1 > op2:
                    minl = op2
                    op1 = op1 + op2
                    op2 = next2()
                elif -op1 == op2:
                    minl = op2
                    op1 = next1()
                    op2 = next2()
                else:
                    minl = -op1
                    op2 = op2 + op1
                    op1 = next1()
                a_prime.delete(minl)
            elif _is_retain(op1) and _is_delete(op2):
                if op1 > -op2:
                    minl = -op2
                    op1 = op1 + op2
                    op2 = next2()
                elif op1 == -op2:
                    minl = op1
                    op1 = next1()
                    op2 = next2()
                else:
                    minl = op1
                    op2 = op2 + op1
                    op1 = next1()
                b_prime.delete(minl)
            else:
                raise OperationError("operations are not compatible")

        return a_prime, b_prime
