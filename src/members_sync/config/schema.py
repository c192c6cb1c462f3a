"""Configuration schema for the members table field set."""

from typing import List

from pydantic import BaseModel, Field, field_validator, model_validator


DEFAULT_MEMBER_FIELDS: List[str] = [
    "Client_ID2",
    "Senior_First",
    "Senior_Last",
    "Senior_Last_First_ID",
    "Member_County",
    "MemberCity",
    "CalAIM_MCO",
    "CalAIM_Status",
    "Kaiser_Status",
    "Kaiser_ID_Status",
    "Kaiser_User_Assignment",
    "Kaiser_Next_Step_Date",
    "T2038_Auth_Email_Kaiser",
    "Social_Worker_Assigned",
    "Hold_For_Social_Worker",
    "SW_ID",
    "RCFE_Registered_ID",
    "RCFE_Name",
    "RCFE_Address",
    "RCFE_City",
    "RCFE_State",
    "RCFE_Zip",
    "RCFE_County",
    "Pathway",
    "Next_Step_Due_Date",
    "workflow_step",
    "workflow_notes",
    "Birth_Date",
    "Member_Phone",
    "Member_Email",
    "MCP_CIN",
    "MediCal_Number",
    "Date_Modified",
    "Date_Created",
    "Kaiser_T2038_Requested_Date",
    "Kaiser_T2038_Received_Date",
    "Kaiser_Tier_Level_Requested_Date",
    "Kaiser_Tier_Level_Received_Date",
    "ILS_RCFE_Sent_For_Contract_Date",
    "ILS_RCFE_Received_Contract_Date",
]

# A cached schema missing any of these is considered stale and re-discovered.
DEFAULT_CRITICAL_FIELDS: List[str] = [
    "Client_ID2",
    "Date_Modified",
    "Kaiser_Status",
    "CalAIM_Status",
    "Hold_For_Social_Worker",
]

DEFAULT_SCHEMA_PATHS: List[str] = [
    "/rest/v2/tables/{table}/fields",
    "/rest/v2/tables/{table}/columns",
    "/rest/v2/tables/{table}",
]


class SyncFieldsConfig(BaseModel):
    """Which remote columns the members sync asks for and relies on."""

    table_name: str = Field(default="CalAIM_tbl_Members", description="Remote members table")
    key_field: str = Field(default="Client_ID2", description="Primary key column")
    key_aliases: List[str] = Field(
        default_factory=lambda: ["client_ID2", "clientId2", "client_id2"],
        description="Historical spellings of the primary key column"
    )
    watermark_field: str = Field(default="Date_Modified", description="Last-modified column")
    watermark_aliases: List[str] = Field(
        default_factory=lambda: ["date_modified", "last_updated"],
        description="Fallback columns read for the modification timestamp"
    )
    select_fields: List[str] = Field(default_factory=lambda: list(DEFAULT_MEMBER_FIELDS))
    critical_fields: List[str] = Field(default_factory=lambda: list(DEFAULT_CRITICAL_FIELDS))
    schema_paths: List[str] = Field(default_factory=lambda: list(DEFAULT_SCHEMA_PATHS))

    @field_validator("select_fields", "critical_fields")
    @classmethod
    def strip_and_dedupe(cls, v: List[str]) -> List[str]:
        seen = set()
        cleaned = []
        for name in v:
            name = str(name).strip()
            if name and name.lower() not in seen:
                seen.add(name.lower())
                cleaned.append(name)
        return cleaned

    @field_validator("schema_paths")
    @classmethod
    def validate_schema_paths(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("At least one schema path is required")
        for path in v:
            if "{table}" not in path:
                raise ValueError(f"Schema path must contain '{{table}}': {path}")
        return v

    @model_validator(mode="after")
    def ensure_key_and_watermark_selected(self) -> "SyncFieldsConfig":
        """The key and watermark columns are always requested."""
        lowered = {name.lower() for name in self.select_fields}
        for required in (self.key_field, self.watermark_field):
            if required.lower() not in lowered:
                self.select_fields.insert(0, required)
                lowered.add(required.lower())
        return self
