from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class StackError(Exception):
	"""
	Base class for every failure the alignment/fusion pipeline reports.
	`kind` is a stable identifier callers can switch on without importing the class.
	"""

	kind = "unknown"

	def __init__(self, message: str, path: Optional[str] = None):
		super().__init__(message)
		self.message = message
		self.path = path

	def __str__(self) -> str:
		if self.path:
			return f"{self.message} ({self.path})"
		return self.message


class ConstructionFailure(StackError):
	kind = "construction_failure"


class DecodeFailure(StackError):
	kind = "decode_failure"


class AlignmentRejected(StackError):
	kind = "alignment_rejected"


class InsufficientCorrespondences(AlignmentRejected):
	kind = "insufficient_correspondences"


class DimensionMismatch(StackError):
	kind = "dimension_mismatch"


class IOFailure(StackError):
	kind = "io_failure"


class ReferenceNotSet(StackError):
	kind = "reference_not_set"


@dataclass(frozen=True)
class Outcome(Generic[T]):
	"""
	Tagged result of a public operation: exactly one of `value` / `error` is meaningful.
	"""

	value: Optional[T] = None
	error: Optional[StackError] = None

	@classmethod
	def success(cls, value: T) -> "Outcome[T]":
		return cls(value=value, error=None)

	@classmethod
	def failure(cls, error: StackError) -> "Outcome[T]":
		return cls(value=None, error=error)

	@property
	def ok(self) -> bool:
		return self.error is None

	@property
	def kind(self) -> Optional[str]:
		return None if self.error is None else self.error.kind

	def unwrap(self) -> T:
		if self.error is not None:
			raise self.error
		return self.value  # type: ignore[return-value]

	def __bool__(self) -> bool:
		return self.ok
