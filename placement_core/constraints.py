"""
placement_core/constraints.py
─────────────────────────────
Attribute constraints: which agents an instance may be placed on.

An operator attaches constraints per attribute name:

    hostname → ["unique"]              one instance per host
    rack     → ["like:1-.*"]           only racks in row 1
    floor    → ["unique", "like:[12]"] spread across floors 1 and 2

`hostname` is synthetic (taken from the offer itself). Every other attribute
comes from the agent's key/value attributes.

Constraint kinds
─────────────────
  like:<regex>  → the attribute value must fully match the regex.
  unique        → the value must not already be used by another active
                  instance. The caller supplies the in-use values.

The set of kinds is closed. Adding a kind means adding a model here and a
branch in parse_constraint(); there is no subclass registry.
"""

from __future__ import annotations

import re
from typing import Annotated, Callable, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, Field, field_validator

UsesLookup = Callable[[str], List[str]]
"""attribute name → values of that attribute currently held by other instances."""


class LikeConstraint(BaseModel):
    """Full-match regular expression against the attribute value."""
    model_config = {"frozen": True}

    kind: Literal["like"] = "like"
    pattern: str

    @field_validator("pattern")
    @classmethod
    def _check_pattern(cls, pattern: str) -> str:
        try:
            re.compile(pattern)
        except re.error as e:
            raise ValueError(f"invalid like pattern {pattern!r}: {e}") from e
        return pattern

    def evaluate(self, attribute: str, value: str, uses: Sequence[str]) -> Optional[str]:
        if re.fullmatch(self.pattern, value) is None:
            return f"{attribute} doesn't match {self}"
        return None

    def __str__(self) -> str:
        return f"like:{self.pattern}"


class UniqueConstraint(BaseModel):
    """The value must not be in use by any other active instance."""
    model_config = {"frozen": True}

    kind: Literal["unique"] = "unique"

    def evaluate(self, attribute: str, value: str, uses: Sequence[str]) -> Optional[str]:
        if value in uses:
            return f"{attribute} doesn't match {self}"
        return None

    def __str__(self) -> str:
        return "unique"


Constraint = Annotated[Union[LikeConstraint, UniqueConstraint], Field(discriminator="kind")]


def parse_constraint(text: str) -> Union[LikeConstraint, UniqueConstraint]:
    """
    Parse the textual form of a constraint.

        parse_constraint("like:master.*") → LikeConstraint(pattern="master.*")
        parse_constraint("unique")        → UniqueConstraint()

    Raises:
        ValueError: unknown constraint kind or invalid regex.
    """
    text = text.strip()
    if text.startswith("like:"):
        return LikeConstraint(pattern=text[len("like:"):])
    if text == "unique":
        return UniqueConstraint()
    raise ValueError(f"unsupported constraint {text!r}")


def parse_constraints(text: str) -> dict:
    """
    Parse the command-line form "attr=constraint,attr=constraint".

    Several constraints on one attribute are listed separately and keep
    their order:
        "hostname=unique,hostname=like:slave.*"
            → {"hostname": [UniqueConstraint(), LikeConstraint("slave.*")]}
    """
    result: dict = {}
    if not text or not text.strip():
        return result
    for token in text.split(","):
        if not token.strip():
            continue
        if "=" not in token:
            raise ValueError(f"invalid constraint {token!r}, expected attribute=constraint")
        attribute, constraint = token.split("=", 1)
        result.setdefault(attribute.strip(), []).append(parse_constraint(constraint))
    return result


def evaluate_all(
    attribute: str,
    value: str,
    constraints: Sequence[Union[LikeConstraint, UniqueConstraint]],
    uses: Sequence[str],
) -> Optional[str]:
    """AND across the list: the first failing constraint's reason, else None."""
    for constraint in constraints:
        reason = constraint.evaluate(attribute, value, uses)
        if reason is not None:
            return reason
    return None
