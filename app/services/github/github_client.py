"""
GitHub App REST client.

Authenticates as the App with an RS256 JWT, exchanges it for per-installation
access tokens (cached until shortly before expiry), and exposes the handful of
REST calls the review and payout workflows need.
"""

import asyncio
import base64
import time
from datetime import datetime
from typing import Any

import httpx
import jwt

from app.config import Settings
from app.errors import GitHubAPIError, configuration_error
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_RETRIES = 3
BACKOFF_FACTOR = 1
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
TOKEN_REFRESH_MARGIN_SECONDS = 60
APP_JWT_TTL_SECONDS = 540  # GitHub caps App JWTs at 10 minutes
PER_PAGE = 100


def split_repository(repository_name: str) -> tuple[str, str]:
    """Split ``owner/repo``; raises ValueError on anything else."""
    owner, _, repo = repository_name.partition("/")
    if not owner or not repo or "/" in repo:
        raise ValueError(f"Invalid repository name: {repository_name!r}")
    return owner, repo


class GitHubAppClient:
    """
    Installation-scoped GitHub API access.

    Every public method takes the installation id first; tokens are fetched
    lazily and reused across calls for the same installation.
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self.base_url = settings.GITHUB_API_URL.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(settings.COLLABORATOR_TIMEOUT_SECONDS),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=50),
            headers={
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "bounty-review-service",
            },
            transport=transport,
        )
        self._installation_tokens: dict[str, tuple[str, float]] = {}
        self._token_lock = asyncio.Lock()

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _app_jwt(self) -> str:
        missing = self.settings.missing_settings("GITHUB_APP_ID", "GITHUB_APP_PRIVATE_KEY")
        if missing:
            raise configuration_error(*missing)

        now = int(time.time())
        claims = {"iat": now - 60, "exp": now + APP_JWT_TTL_SECONDS, "iss": str(self.settings.GITHUB_APP_ID)}
        private_key = self.settings.GITHUB_APP_PRIVATE_KEY.replace("\\n", "\n")
        return jwt.encode(claims, private_key, algorithm="RS256")

    async def _installation_token(self, installation_id: str) -> str:
        async with self._token_lock:
            cached = self._installation_tokens.get(installation_id)
            if cached and cached[1] - TOKEN_REFRESH_MARGIN_SECONDS > time.time():
                return cached[0]

            response = await self._client.post(
                f"/app/installations/{installation_id}/access_tokens",
                headers={"Authorization": f"Bearer {self._app_jwt()}"},
            )
            data = self._handle_response(response, "create_installation_token")

            expires_at = time.time() + 3600
            if data.get("expires_at"):
                expires_at = datetime.fromisoformat(data["expires_at"].replace("Z", "+00:00")).timestamp()

            self._installation_tokens[installation_id] = (data["token"], expires_at)
            logger.debug("Installation token refreshed", installation_id=installation_id)
            return data["token"]

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self, installation_id: str, method: str, path: str, operation: str, **kwargs
    ) -> Any:
        token = await self._installation_token(installation_id)
        headers = {"Authorization": f"Bearer {token}"}

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, path, headers=headers, **kwargs)
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise GitHubAPIError(
                        f"GitHub request failed: {e}", status_code=None, operation=operation
                    ) from e
                await self._backoff(attempt, operation, error=str(e))
                continue

            if self._should_retry(response) and attempt < MAX_RETRIES:
                await self._backoff(attempt, operation, status_code=response.status_code)
                continue

            return self._handle_response(response, operation)

        raise GitHubAPIError("GitHub retry loop exhausted", operation=operation)

    @staticmethod
    def _should_retry(response: httpx.Response) -> bool:
        if response.status_code in RETRY_STATUS_CODES:
            return True
        # Secondary rate limits come back as 403 with no remaining quota
        return response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0"

    @staticmethod
    async def _backoff(attempt: int, operation: str, **context) -> None:
        delay = BACKOFF_FACTOR * (2 ** (attempt - 1))
        logger.debug("GitHub API retrying request", operation=operation, attempt=attempt, backoff_seconds=delay, **context)
        await asyncio.sleep(delay)

    @staticmethod
    def _handle_response(response: httpx.Response, operation: str) -> Any:
        if response.is_success:
            if response.status_code == 204 or not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise GitHubAPIError(f"Invalid response format: {e}", response.status_code, operation) from e

        try:
            message = response.json().get("message", "Unknown GitHub API error")
        except ValueError:
            message = response.text[:200] if response.text else "Unknown GitHub API error"

        logger.warning(
            "GitHub API call failed",
            operation=operation,
            status_code=response.status_code,
            error_message=message,
        )
        raise GitHubAPIError(
            f"GitHub {operation} failed ({response.status_code}): {message}",
            status_code=response.status_code,
            operation=operation,
        )

    # ------------------------------------------------------------------
    # Repository / pull requests
    # ------------------------------------------------------------------

    async def get_default_branch(self, installation_id: str, repository_name: str) -> str:
        owner, repo = split_repository(repository_name)
        data = await self._request(installation_id, "GET", f"/repos/{owner}/{repo}", "get_repository")
        return data["default_branch"]

    async def get_pull_request(self, installation_id: str, repository_name: str, pr_number: int) -> dict:
        owner, repo = split_repository(repository_name)
        return await self._request(
            installation_id, "GET", f"/repos/{owner}/{repo}/pulls/{pr_number}", "get_pull_request"
        )

    async def list_pull_request_files(
        self, installation_id: str, repository_name: str, pr_number: int
    ) -> list[dict]:
        owner, repo = split_repository(repository_name)
        files: list[dict] = []
        page = 1
        while True:
            batch = await self._request(
                installation_id,
                "GET",
                f"/repos/{owner}/{repo}/pulls/{pr_number}/files",
                "list_pull_request_files",
                params={"per_page": PER_PAGE, "page": page},
            )
            files.extend(batch)
            if len(batch) < PER_PAGE:
                return files
            page += 1

    async def get_issue(self, installation_id: str, repository_name: str, issue_number: int) -> dict:
        owner, repo = split_repository(repository_name)
        return await self._request(
            installation_id, "GET", f"/repos/{owner}/{repo}/issues/{issue_number}", "get_issue"
        )

    async def get_file_content(self, installation_id: str, repository_name: str, path: str) -> str | None:
        """Return decoded file content, or None when the path does not exist."""
        owner, repo = split_repository(repository_name)
        try:
            data = await self._request(
                installation_id, "GET", f"/repos/{owner}/{repo}/contents/{path}", "get_file_content"
            )
        except GitHubAPIError as e:
            if e.status_code == 404:
                return None
            raise

        if not isinstance(data, dict) or data.get("encoding") != "base64":
            return None
        return base64.b64decode(data.get("content", "")).decode("utf-8", errors="replace")

    # ------------------------------------------------------------------
    # Comments / labels
    # ------------------------------------------------------------------

    async def list_issue_comments(
        self, installation_id: str, repository_name: str, issue_number: int
    ) -> list[dict]:
        owner, repo = split_repository(repository_name)
        return await self._request(
            installation_id,
            "GET",
            f"/repos/{owner}/{repo}/issues/{issue_number}/comments",
            "list_issue_comments",
            params={"per_page": PER_PAGE},
        )

    async def get_comment(self, installation_id: str, repository_name: str, comment_id: str) -> dict:
        owner, repo = split_repository(repository_name)
        return await self._request(
            installation_id, "GET", f"/repos/{owner}/{repo}/issues/comments/{comment_id}", "get_comment"
        )

    async def create_comment(
        self, installation_id: str, repository_name: str, issue_number: int, body: str
    ) -> dict:
        owner, repo = split_repository(repository_name)
        return await self._request(
            installation_id,
            "POST",
            f"/repos/{owner}/{repo}/issues/{issue_number}/comments",
            "create_comment",
            json={"body": body},
        )

    async def update_comment(
        self, installation_id: str, repository_name: str, comment_id: str, body: str
    ) -> dict:
        owner, repo = split_repository(repository_name)
        return await self._request(
            installation_id,
            "PATCH",
            f"/repos/{owner}/{repo}/issues/comments/{comment_id}",
            "update_comment",
            json={"body": body},
        )

    async def delete_comment(self, installation_id: str, repository_name: str, comment_id: str) -> None:
        owner, repo = split_repository(repository_name)
        try:
            await self._request(
                installation_id, "DELETE", f"/repos/{owner}/{repo}/issues/comments/{comment_id}", "delete_comment"
            )
        except GitHubAPIError as e:
            if e.status_code != 404:
                raise

    async def remove_label(
        self, installation_id: str, repository_name: str, issue_number: int, label: str
    ) -> None:
        owner, repo = split_repository(repository_name)
        try:
            await self._request(
                installation_id,
                "DELETE",
                f"/repos/{owner}/{repo}/issues/{issue_number}/labels/{label}",
                "remove_label",
            )
        except GitHubAPIError as e:
            if e.status_code != 404:
                raise

    async def check_connectivity(self) -> None:
        """Authenticate as the App; raises on failure."""
        response = await self._client.get("/app", headers={"Authorization": f"Bearer {self._app_jwt()}"})
        self._handle_response(response, "get_app")
