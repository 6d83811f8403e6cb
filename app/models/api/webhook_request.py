from pydantic import BaseModel, ConfigDict, Field


class ManualAnalysisRequest(BaseModel):
    """Body of POST /webhooks/github/manual-analysis.

    Every field is optional at parse time so the route can list exactly which
    ones are missing.
    """

    model_config = ConfigDict(populate_by_name=True)

    installation_id: str | int | None = Field(default=None, alias="installationId")
    repository_name: str | None = Field(default=None, alias="repositoryName")
    pr_number: int | None = Field(default=None, alias="prNumber")

    def missing_fields(self) -> list[str]:
        missing = []
        if self.installation_id in (None, ""):
            missing.append("installationId")
        if not self.repository_name:
            missing.append("repositoryName")
        if self.pr_number is None:
            missing.append("prNumber")
        return missing
