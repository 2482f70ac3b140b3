"""
Ensemble Entity Models.

Typed views over the performance records the consistency rules need to
read when generating a derived contract.  Collections themselves are
stored as plain JSON records (camelCase keys, as the screens write them);
these models are only used at the point where a new record is built.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

_UNSPECIFIED_CLIENT: str = "No especificado"


class ContractFile(BaseModel):
    """A contract document attached to a performance."""

    id: str
    name: str = ""
    fileUrl: str = ""
    uploadDate: str = ""
    description: Optional[str] = None

    model_config = {"extra": "ignore"}

    @property
    def extension(self) -> str:
        """Lower-case file extension, ``"unknown"`` when there is none."""
        if "." not in self.name:
            return "unknown"
        return self.name.rsplit(".", 1)[1].lower() or "unknown"


class Income(BaseModel):
    id: str = ""
    concept: str = ""
    amount: float = 0.0
    source: str = ""

    model_config = {"extra": "ignore"}


class PerformanceHeader(BaseModel):
    """The subset of a performance record a derived contract is built from."""

    id: str
    title: str = ""
    venue: str = ""
    date: str = ""
    organizer: str = ""
    income: list[Income] = Field(default_factory=list)
    contracts: list[ContractFile] = Field(default_factory=list)

    model_config = {"extra": "ignore"}

    @property
    def total_income(self) -> float:
        return sum(entry.amount for entry in self.income)

    @property
    def display_date(self) -> str:
        """``dd/MM/yyyy`` rendering of :attr:`date`, or the raw value."""
        try:
            return datetime.fromisoformat(self.date).strftime("%d/%m/%Y")
        except ValueError:
            return self.date


def derived_contract_id(performance_id: str, file_id: str) -> str:
    """Id of the contract generated for *file_id* of *performance_id*."""
    return f"perf-{performance_id}-{file_id}"


class DerivedContract(BaseModel):
    """A contract record generated from a performance's attached file."""

    id: str
    name: str
    client: str
    venue: str
    eventDate: str
    contractDate: str
    amount: float
    status: str = "signed"
    paymentStatus: str = "pending"
    description: str
    files: list[dict[str, object]]
    createdAt: str
    updatedAt: str
    sourcePerformanceId: str

    @classmethod
    def from_performance(
        cls, performance: PerformanceHeader, contract_file: ContractFile,
    ) -> "DerivedContract":
        now = datetime.now(timezone.utc).isoformat()
        return cls(
            id=derived_contract_id(performance.id, contract_file.id),
            name=f"{performance.title} - {performance.venue} - {performance.display_date}",
            client=performance.organizer or _UNSPECIFIED_CLIENT,
            venue=performance.venue,
            eventDate=performance.date,
            contractDate=date.today().isoformat(),
            amount=performance.total_income,
            description=(
                "Contrato generado automáticamente desde la actuación: "
                f"{performance.title}"
            ),
            files=[{
                "id": contract_file.id,
                "name": contract_file.name,
                "type": contract_file.extension,
                "size": 0,
                "dataUrl": contract_file.fileUrl,
                "uploadDate": contract_file.uploadDate,
            }],
            createdAt=now,
            updatedAt=now,
            sourcePerformanceId=performance.id,
        )
