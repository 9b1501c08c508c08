"""Account provisioning and administrative account changes."""

from __future__ import annotations

from typing import Protocol, Tuple

from .account import Account
from .audit import AuditLogger
from .config_store import WebhookConfigStore
from .contracts import AccountUpdate, CreateAccountInput
from .errors import AccountNotFound, ValidationError
from .payload import check_lookback_days
from ..security.url_guard import ensure_webhook_url


class AccountAdminStore(Protocol):
    def create_account(
        self, payload: CreateAccountInput, quota_limit: int, idempotency_key: str | None
    ) -> Tuple[Account, bool]:
        ...

    def apply_account_update(self, account_id: str, update: AccountUpdate) -> Account | None:
        ...


class AccountAdminService:
    """Account workflows shared by the provisioning hook and the admin console."""

    def __init__(
        self,
        store: AccountAdminStore,
        config_store: WebhookConfigStore,
        audit: AuditLogger,
    ) -> None:
        self._store = store
        self._config_store = config_store
        self._audit = audit

    def provision_account(
        self, payload: CreateAccountInput, idempotency_key: str | None, actor_id: str = "system:provisioning"
    ) -> Tuple[Account, bool]:
        """Create the dispatch-side account row using the configured default quota."""
        if not payload.account_id or not payload.email:
            raise ValidationError("account_id and email are required")
        quota_limit = self._config_store.current().default_quota_limit
        account, replay = self._store.create_account(payload, quota_limit, idempotency_key)
        if not replay:
            self._audit.log_system_action(
                actor_id,
                "account.provisioned",
                target_account_id=account.account_id,
                details={"quota_limit": account.quota_limit},
            )
        return account, replay

    def update_account(self, account_id: str, update: AccountUpdate, actor_id: str) -> Account:
        if update.quota_limit is not None and update.quota_limit < 0:
            raise ValidationError("quota limit must not be negative")
        if update.webhook_url is not None:
            ensure_webhook_url(update.webhook_url)
        if update.webhook_days is not None:
            check_lookback_days(update.webhook_days)

        account = self._store.apply_account_update(account_id, update)
        if account is None:
            raise AccountNotFound(account_id)

        changes: dict[str, object] = {}
        if update.quota_limit is not None:
            changes["quota_limit"] = update.quota_limit
        if update.suspended is not None:
            changes["suspended"] = update.suspended
        if update.reset_quota:
            changes["quota_used"] = 0
        if update.clear_webhook_override:
            changes["webhook_override"] = None
        else:
            if update.webhook_url is not None:
                changes["webhook_url"] = update.webhook_url
            if update.webhook_days is not None:
                changes["webhook_days"] = update.webhook_days
            if update.webhook_fields is not None:
                changes["webhook_fields"] = update.webhook_fields.to_mapping()
        if changes:
            self._audit.log_system_action(
                actor_id, "account.updated", target_account_id=account_id, details=changes
            )
        return account

    def reset_quota(self, account_id: str, actor_id: str) -> Account:
        """Clear today's usage so the account can dispatch again immediately."""
        return self.update_account(account_id, AccountUpdate(reset_quota=True), actor_id)
