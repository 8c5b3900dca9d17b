"""
DynamoDB-backed credit ledger.

Layout (LEDGER_TABLE):
    pk=<user_id>, sk=ACCOUNT                       account row with both pool balances
    pk=<user_id>, sk=TX#<reference_id>#<type>...   one row per credit transaction

Every mutation reads the account row with a consistent read, lets the caller
compute what to write from that snapshot, then commits the account update,
the transaction rows, an optional subscription record and an optional event
claim check in a single TransactWriteItems call. The account update is
conditioned on the version that was read, so two writers for the same user
cannot both commit against the same balance; the loser re-reads and
recomputes. Transaction rows are conditioned on not existing, which makes
(user, reference, type) unique.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from ledger.aws_clients import get_dynamodb
from ledger.constants import (
    ACCOUNT_SK,
    CUSTOMER_INDEX,
    LEDGER_TABLE,
    SUBSCRIPTIONS_TABLE,
    THROTTLING_ERRORS,
    TRANSACTION_SK_PREFIX,
    WEBHOOK_EVENTS_TABLE,
)
from ledger.errors import ProfileNotFoundError, TransientStoreError
from ledger.models import (
    CreditPool,
    CreditTransaction,
    EventClaim,
    SubscriptionRecord,
    SubscriptionStatus,
    UserAccount,
)
from ledger.retry import RetryConfig, retry_call

logger = logging.getLogger(__name__)

# Sentinel for distinguishing "leave unchanged" from None (which clears a field)
UNSET = object()


class VersionConflict(Exception):
    """Another writer committed to the account row after we read it."""


LEDGER_RETRY_CONFIG = RetryConfig(
    max_retries=4,
    base_delay=0.05,
    max_delay=1.0,
    jitter_factor=0.2,
    retryable_exceptions=(VersionConflict,),
)


@dataclass
class LedgerMutation:
    """What to commit for one user, computed from a fresh account snapshot."""

    transactions: list = field(default_factory=list)
    subscription: Optional[SubscriptionRecord] = None
    status: Any = UNSET
    tier: Any = UNSET
    subscription_id: Any = UNSET

    def is_empty(self) -> bool:
        return (
            not self.transactions
            and self.subscription is None
            and self.status is UNSET
            and self.tier is UNSET
            and self.subscription_id is UNSET
        )


@dataclass(frozen=True)
class LedgerWrite:
    """Outcome of a mutation. `duplicate` is set when the entries already existed."""

    account: UserAccount
    transactions: list
    duplicate: bool = False


class LedgerStore(Protocol):
    def get_user(self, user_id: str) -> UserAccount: ...

    def get_user_by_customer_id(self, customer_id: Optional[str]) -> UserAccount: ...

    def find_transaction_group(self, user_id: str, reference_id: str) -> list[CreditTransaction]: ...

    def get_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]: ...

    def apply(
        self,
        user_id: str,
        compute: Callable[[UserAccount], Optional[LedgerMutation]],
        claim: Optional[EventClaim] = None,
    ) -> LedgerWrite: ...

    def append_transaction(
        self, tx: CreditTransaction, claim: Optional[EventClaim] = None
    ) -> Optional[int]: ...

    def upsert_subscription(
        self,
        record: SubscriptionRecord,
        claim: Optional[EventClaim] = None,
        status: Any = UNSET,
        tier: Any = UNSET,
    ) -> LedgerWrite: ...


def _raise_if_throttled(e: ClientError, operation: str) -> None:
    code = e.response["Error"]["Code"]
    if code in THROTTLING_ERRORS:
        raise TransientStoreError(f"{operation} throttled: {code}", details={"code": code}) from e


class DynamoLedgerStore:
    def __init__(
        self,
        dynamodb=None,
        ledger_table: str = LEDGER_TABLE,
        subscriptions_table: str = SUBSCRIPTIONS_TABLE,
        events_table: str = WEBHOOK_EVENTS_TABLE,
        retry_config: RetryConfig = LEDGER_RETRY_CONFIG,
    ):
        self._dynamodb = dynamodb
        self.ledger_table = ledger_table
        self.subscriptions_table = subscriptions_table
        self.events_table = events_table
        self.retry_config = retry_config

    @property
    def dynamodb(self):
        return self._dynamodb or get_dynamodb()

    def _ledger(self):
        return self.dynamodb.Table(self.ledger_table)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_user(self, user_id: str) -> UserAccount:
        try:
            response = self._ledger().get_item(
                Key={"pk": user_id, "sk": ACCOUNT_SK},
                ConsistentRead=True,
            )
        except ClientError as e:
            _raise_if_throttled(e, "get_user")
            raise

        item = response.get("Item")
        if not item:
            raise ProfileNotFoundError("user_id", user_id)
        return UserAccount.from_item(item)

    def get_user_by_customer_id(self, customer_id: Optional[str]) -> UserAccount:
        if not customer_id:
            raise ProfileNotFoundError("customer_id", customer_id)
        try:
            response = self._ledger().query(
                IndexName=CUSTOMER_INDEX,
                KeyConditionExpression=Key("provider_customer_id").eq(customer_id),
            )
        except ClientError as e:
            _raise_if_throttled(e, "get_user_by_customer_id")
            raise

        items = [item for item in response.get("Items", []) if item.get("sk") == ACCOUNT_SK]
        if not items:
            raise ProfileNotFoundError("customer_id", customer_id)
        if len(items) > 1:
            logger.warning(f"Customer {customer_id} maps to {len(items)} accounts, using first")
        return UserAccount.from_item(items[0])

    def _query_transactions(self, user_id: str, prefix: str) -> list[CreditTransaction]:
        table = self._ledger()
        kwargs = {
            "KeyConditionExpression": Key("pk").eq(user_id) & Key("sk").begins_with(prefix),
            "ConsistentRead": True,
        }
        transactions = []
        try:
            while True:
                response = table.query(**kwargs)
                transactions.extend(
                    CreditTransaction.from_item(item, TRANSACTION_SK_PREFIX)
                    for item in response.get("Items", [])
                )
                if "LastEvaluatedKey" not in response:
                    break
                kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        except ClientError as e:
            _raise_if_throttled(e, "query_transactions")
            raise
        return transactions

    def find_transaction_group(self, user_id: str, reference_id: str) -> list[CreditTransaction]:
        """All transactions recorded under a reference id; empty when none."""
        # Trailing separator keeps invoice_in_1 from matching invoice_in_10
        return self._query_transactions(user_id, f"{TRANSACTION_SK_PREFIX}{reference_id}#")

    def list_transactions(self, user_id: str) -> list[CreditTransaction]:
        return self._query_transactions(user_id, TRANSACTION_SK_PREFIX)

    def derive_balances(self, user_id: str) -> dict[CreditPool, int]:
        """Running sum of the transaction log per pool."""
        balances = {pool: 0 for pool in CreditPool}
        for tx in self.list_transactions(user_id):
            balances[tx.pool] += tx.amount
        return balances

    def get_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        try:
            response = self.dynamodb.Table(self.subscriptions_table).get_item(
                Key={"pk": subscription_id},
                ConsistentRead=True,
            )
        except ClientError as e:
            _raise_if_throttled(e, "get_subscription")
            raise
        item = response.get("Item")
        return SubscriptionRecord.from_item(item) if item else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def apply(
        self,
        user_id: str,
        compute: Callable[[UserAccount], Optional[LedgerMutation]],
        claim: Optional[EventClaim] = None,
    ) -> LedgerWrite:
        """Read the account, compute a mutation from it and commit both atomically.

        `compute` may be called more than once when another writer wins the
        race; it must derive everything from the account it is given (or from
        reads it makes itself).
        """

        def attempt() -> LedgerWrite:
            account = self.get_user(user_id)
            mutation = compute(account)
            if mutation is None or mutation.is_empty():
                return LedgerWrite(account=account, transactions=[])

            try:
                self._commit(account, mutation, claim)
            except ClientError as e:
                if e.response["Error"]["Code"] == "TransactionCanceledException":
                    return self._resolve_cancellation(account, mutation, claim)
                _raise_if_throttled(e, "apply")
                raise

            return LedgerWrite(
                account=self._applied(account, mutation),
                transactions=list(mutation.transactions),
            )

        try:
            return retry_call(attempt, config=self.retry_config)
        except VersionConflict as e:
            raise TransientStoreError(
                f"Gave up on account {user_id} after repeated write conflicts",
                details={"user_id": user_id},
            ) from e

    def append_transaction(
        self, tx: CreditTransaction, claim: Optional[EventClaim] = None
    ) -> Optional[int]:
        """Append one transaction; returns the new pool balance, or None if already recorded."""
        result = self.apply(tx.user_id, lambda account: LedgerMutation(transactions=[tx]), claim)
        if result.duplicate:
            return None
        return result.account.balance(tx.pool)

    def upsert_subscription(
        self,
        record: SubscriptionRecord,
        claim: Optional[EventClaim] = None,
        status: Any = UNSET,
        tier: Any = UNSET,
    ) -> LedgerWrite:
        return self.apply(
            record.user_id,
            lambda account: LedgerMutation(subscription=record, status=status, tier=tier),
            claim,
        )

    def _commit(self, account: UserAccount, mutation: LedgerMutation, claim: Optional[EventClaim]) -> None:
        items = [{"Update": self._account_update(account, mutation)}]

        for tx in mutation.transactions:
            items.append({
                "Put": {
                    "TableName": self.ledger_table,
                    "Item": tx.to_item(TRANSACTION_SK_PREFIX + tx.key),
                    "ConditionExpression": "attribute_not_exists(pk)",
                }
            })

        if mutation.subscription is not None:
            items.append({
                "Put": {
                    "TableName": self.subscriptions_table,
                    "Item": mutation.subscription.to_item(),
                }
            })

        if claim is not None:
            items.append({
                "ConditionCheck": {
                    "TableName": self.events_table,
                    "Key": {"pk": claim.event_id, "sk": claim.event_type},
                    "ConditionExpression": "claim_token = :token",
                    "ExpressionAttributeValues": {":token": claim.token},
                }
            })

        # The resource-level client takes native values, same as Table calls
        self.dynamodb.meta.client.transact_write_items(TransactItems=items)

    def _account_update(self, account: UserAccount, mutation: LedgerMutation) -> dict:
        deltas = {pool: 0 for pool in CreditPool}
        for tx in mutation.transactions:
            deltas[tx.pool] += tx.amount

        values = {
            ":zero": 0,
            ":sub": deltas[CreditPool.SUBSCRIPTION],
            ":pur": deltas[CreditPool.PURCHASED],
            ":expected": account.version,
            ":next": account.version + 1,
            ":now": datetime.now(timezone.utc).isoformat(),
        }
        sets = [
            "subscription_credit_balance = if_not_exists(subscription_credit_balance, :zero) + :sub",
            "purchased_credit_balance = if_not_exists(purchased_credit_balance, :zero) + :pur",
            "#version = :next",
            "updated_at = :now",
        ]
        removes = []

        if mutation.status is not UNSET:
            sets.append("subscription_status = :status")
            values[":status"] = SubscriptionStatus(mutation.status).value

        for attr, value in (("subscription_tier", mutation.tier), ("subscription_id", mutation.subscription_id)):
            if value is UNSET:
                continue
            if value is None:
                removes.append(attr)
            else:
                sets.append(f"{attr} = :{attr}")
                values[f":{attr}"] = value

        expression = "SET " + ", ".join(sets)
        if removes:
            expression += " REMOVE " + ", ".join(removes)

        return {
            "TableName": self.ledger_table,
            "Key": {"pk": account.id, "sk": ACCOUNT_SK},
            "UpdateExpression": expression,
            "ConditionExpression": "attribute_exists(pk) AND (attribute_not_exists(#version) OR #version = :expected)",
            "ExpressionAttributeNames": {"#version": "version"},
            "ExpressionAttributeValues": values,
        }

    def _resolve_cancellation(
        self, account: UserAccount, mutation: LedgerMutation, claim: Optional[EventClaim]
    ) -> LedgerWrite:
        existing = [tx.key for tx in mutation.transactions if self._transaction_exists(account.id, tx.key)]
        if existing:
            logger.info(f"Ledger entries already recorded for {account.id}: {existing}")
            return LedgerWrite(account=account, transactions=[], duplicate=True)

        if claim is not None and not self._claim_held(claim):
            raise TransientStoreError(
                f"Claim on event {claim.event_id} is no longer held",
                details={"event_id": claim.event_id},
            )

        raise VersionConflict(f"Account {account.id} changed since version {account.version}")

    def _transaction_exists(self, user_id: str, key: str) -> bool:
        try:
            response = self._ledger().get_item(
                Key={"pk": user_id, "sk": TRANSACTION_SK_PREFIX + key},
                ConsistentRead=True,
            )
        except ClientError as e:
            _raise_if_throttled(e, "get_item")
            raise
        return "Item" in response

    def _claim_held(self, claim: EventClaim) -> bool:
        try:
            response = self.dynamodb.Table(self.events_table).get_item(
                Key={"pk": claim.event_id, "sk": claim.event_type},
                ConsistentRead=True,
            )
        except ClientError as e:
            _raise_if_throttled(e, "get_item")
            raise
        return response.get("Item", {}).get("claim_token") == claim.token

    def _applied(self, account: UserAccount, mutation: LedgerMutation) -> UserAccount:
        changes = {"version": account.version + 1}
        for tx in mutation.transactions:
            if tx.pool is CreditPool.SUBSCRIPTION:
                changes["subscription_credit_balance"] = (
                    changes.get("subscription_credit_balance", account.subscription_credit_balance) + tx.amount
                )
            else:
                changes["purchased_credit_balance"] = (
                    changes.get("purchased_credit_balance", account.purchased_credit_balance) + tx.amount
                )
        if mutation.status is not UNSET:
            changes["subscription_status"] = SubscriptionStatus(mutation.status)
        if mutation.tier is not UNSET:
            changes["subscription_tier"] = mutation.tier
        if mutation.subscription_id is not UNSET:
            changes["subscription_id"] = mutation.subscription_id
        return replace(account, **changes)
