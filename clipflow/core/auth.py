from dataclasses import dataclass
from enum import Enum


class PrincipalType(str, Enum):
    MACHINE = "machine"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


@dataclass(slots=True)
class MachineCredentialRecord:
    module_id: str
    key_hash: str
    scopes: list[str]
