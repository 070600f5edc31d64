# gymvc/core/claims.py
from __future__ import annotations

from typing import Annotated, Literal, Union
import math

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MAX_EXTENSIONS = 16
MAX_EXTENSION_KEY_LEN = 64
MAX_EXTENSION_VALUE_LEN = 256

BASE_CREDENTIAL_TYPES = ["VerifiableCredential", "GymMembershipCredential"]

# tipo W3C adicional según la clase de beneficio
CREDENTIAL_TYPE_BY_KIND = {
    "gym_floor": "GymFloorAccessCredential",
    "aquatic": "AquaticFacilitiesCredential",
    "wellness": "WellnessCredential",
    "personal_training": "PersonalTrainingCredential",
    "group_fitness": "GroupFitnessCredential",
    "nutrition": "NutritionCredential",
    "general": "GeneralAccessCredential",
}


class ClaimModel(BaseModel):
    # JSON en camelCase dentro del VC; extra="forbid" = nada sin validar
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
        allow_inf_nan=False,
    )


class ServiceRef(ClaimModel):
    id: str
    name: str
    category: str | None = None


class GymInfo(ClaimModel):
    name: str
    location: str | None = None


class _BenefitBase(ClaimModel):
    benefit_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str | None = None
    max_uses_per_month: int | None = Field(default=None, ge=1)
    requires_booking: bool = False
    services: list[ServiceRef] = Field(default_factory=list)


class GymFloorBenefit(_BenefitBase):
    kind: Literal["gym_floor"] = "gym_floor"
    areas: list[str] = Field(default_factory=list)


class AquaticBenefit(_BenefitBase):
    kind: Literal["aquatic"] = "aquatic"
    lane_booking: bool = False


class WellnessBenefit(_BenefitBase):
    kind: Literal["wellness"] = "wellness"
    facilities: list[str] = Field(default_factory=list)


class PersonalTrainingBenefit(_BenefitBase):
    kind: Literal["personal_training"] = "personal_training"
    sessions_per_month: int | None = Field(default=None, ge=1)


class GroupFitnessBenefit(_BenefitBase):
    kind: Literal["group_fitness"] = "group_fitness"
    classes: list[str] = Field(default_factory=list)


class NutritionBenefit(_BenefitBase):
    kind: Literal["nutrition"] = "nutrition"
    consultations_per_month: int | None = Field(default=None, ge=1)


class GeneralAccessBenefit(_BenefitBase):
    kind: Literal["general"] = "general"


Benefit = Annotated[
    Union[
        GymFloorBenefit,
        AquaticBenefit,
        WellnessBenefit,
        PersonalTrainingBenefit,
        GroupFitnessBenefit,
        NutritionBenefit,
        GeneralAccessBenefit,
    ],
    Field(discriminator="kind"),
]


class SubjectClaims(ClaimModel):
    """credentialSubject del VC: titular + un beneficio de su membresía."""

    holder_did: str = Field(alias="id", pattern=r"^did:[a-z0-9]+:.+")
    holder_name: str = Field(min_length=1)
    membership_id: str = Field(min_length=1)
    membership_plan: str | None = None
    benefit: Benefit
    gym: GymInfo | None = None
    extensions: dict[str, str | int | float | bool] = Field(default_factory=dict)

    @field_validator("extensions")
    @classmethod
    def _bounded_extensions(cls, v: dict) -> dict:
        if len(v) > MAX_EXTENSIONS:
            raise ValueError(f"at most {MAX_EXTENSIONS} extension fields")
        for key, value in v.items():
            if not key or len(key) > MAX_EXTENSION_KEY_LEN:
                raise ValueError(f"extension key length must be 1..{MAX_EXTENSION_KEY_LEN}")
            if isinstance(value, str) and len(value) > MAX_EXTENSION_VALUE_LEN:
                raise ValueError(f"extension '{key}' is longer than {MAX_EXTENSION_VALUE_LEN}")
            if isinstance(value, float) and not math.isfinite(value):
                raise ValueError(f"extension '{key}' must be a finite number")
        return v

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")

    def credential_types(self) -> list[str]:
        return BASE_CREDENTIAL_TYPES + [CREDENTIAL_TYPE_BY_KIND[self.benefit.kind]]
