# hls_ingest/db_utils_dynamo.py
"""
Provenance catalog on DynamoDB.

Two tables, both keyed by natural keys so every write can be re-issued safely:
  source table  (HASH source_url)  work items, with a `processed` flag
  records table (HASH identity)    one metadata record per completed identity
An optional claims table (HASH identity) holds short leases so several
workers/processes never work on the same identity at once.
"""
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

from boto3.dynamodb.conditions import Attr
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from hls_ingest.errors import CatalogError
from hls_ingest.models import MetadataRecord, WorkItem

log = logging.getLogger(__name__)

SOURCE_KEY = "source_url"
RECORD_KEY = "identity"
CLAIM_KEY = "identity"

_serializer = TypeSerializer()


def _serialize(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _serializer.serialize(v) for k, v in item.items()}


def _error_code(e: Exception) -> str:
    if isinstance(e, ClientError):
        return e.response.get("Error", {}).get("Code", "")
    return ""


class DynamoProvenanceStore:
    def __init__(self, resource, client, *, source_table: str, records_table: str,
                 claims_table: Optional[str] = None, completion_mode: str = "flag",
                 lease_seconds: int = 3600, clock: Callable[[], float] = time.time):
        self._resource = resource
        self._client = client
        self.source_table_name = source_table
        self.records_table_name = records_table
        self.claims_table_name = claims_table
        self.completion_mode = completion_mode
        self.lease_seconds = lease_seconds
        self._clock = clock
        self._sources = resource.Table(source_table)
        self._records = resource.Table(records_table)
        self._claims = resource.Table(claims_table) if claims_table else None
        self._local_claims: set = set()
        self._local_lock = threading.Lock()

    # ------------------------------------------------------------------ lifecycle
    def _table_names(self) -> List[str]:
        names = [self.source_table_name, self.records_table_name]
        if self.claims_table_name:
            names.append(self.claims_table_name)
        return names

    def check_connection(self) -> None:
        """Describe every table. Any failure is fatal for the run."""
        for name in self._table_names():
            try:
                self._client.describe_table(TableName=name)
            except (ClientError, BotoCoreError) as e:
                raise CatalogError(f"Cannot reach DynamoDB table '{name}': {e}") from e
        log.info(f"Catalog reachable: {', '.join(self._table_names())}")

    def close(self) -> None:
        try:
            self._client.close()
            self._resource.meta.client.close()
        except (BotoCoreError, OSError) as e:
            raise CatalogError(f"Error closing DynamoDB connections: {e}") from e

    def init_tables(self) -> None:
        """Create any missing table (PAY_PER_REQUEST) and wait until it exists."""
        key_names = {
            self.source_table_name: SOURCE_KEY,
            self.records_table_name: RECORD_KEY,
        }
        if self.claims_table_name:
            key_names[self.claims_table_name] = CLAIM_KEY
        for table_name, key in key_names.items():
            try:
                self._client.describe_table(TableName=table_name)
                log.info(f"DynamoDB table '{table_name}' already exists.")
                continue
            except ClientError as e:
                if _error_code(e) != "ResourceNotFoundException":
                    raise CatalogError(f"Error describing DynamoDB table '{table_name}': {e}") from e
            log.info(f"DynamoDB table '{table_name}' not found. Creating table...")
            try:
                self._client.create_table(
                    TableName=table_name,
                    KeySchema=[{"AttributeName": key, "KeyType": "HASH"}],
                    AttributeDefinitions=[{"AttributeName": key, "AttributeType": "S"}],
                    BillingMode="PAY_PER_REQUEST",
                )
                waiter = self._client.get_waiter("table_exists")
                waiter.wait(TableName=table_name, WaiterConfig={"Delay": 5, "MaxAttempts": 12})
            except (ClientError, BotoCoreError) as e:
                raise CatalogError(f"Error creating DynamoDB table '{table_name}': {e}") from e
            log.info(f"DynamoDB table '{table_name}' created successfully.")

    # ------------------------------------------------------------------ backlog
    def iter_unprocessed(self, page_size: int = 100) -> Iterator[WorkItem]:
        """
        Lazily scan the source table for items whose `processed` flag is missing
        or not true. Calling it again after a crash re-establishes the same
        backlog minus whatever was flipped in between.
        """
        scan_kwargs: Dict[str, Any] = {
            "FilterExpression": Attr("processed").not_exists() | Attr("processed").ne(True),
            "Limit": page_size,
        }
        while True:
            try:
                page = self._sources.scan(**scan_kwargs)
            except (ClientError, BotoCoreError) as e:
                raise CatalogError(f"Error scanning '{self.source_table_name}': {e}") from e
            for doc in page.get("Items", []):
                yield WorkItem.from_document(doc)
            last_key = page.get("LastEvaluatedKey")
            if not last_key:
                return
            scan_kwargs["ExclusiveStartKey"] = last_key

    def enqueue(self, item: WorkItem) -> bool:
        """Insert a source item unless one with the same URL exists. Returns True if inserted."""
        try:
            self._sources.put_item(
                Item=item.to_document(),
                ConditionExpression=Attr(SOURCE_KEY).not_exists(),
            )
        except ClientError as e:
            if _error_code(e) == "ConditionalCheckFailedException":
                log.debug(f"Source already queued: {item.source_url}")
                return False
            raise CatalogError(f"Error enqueuing {item.source_url}: {e}") from e
        except BotoCoreError as e:
            raise CatalogError(f"Error enqueuing {item.source_url}: {e}") from e
        return True

    # ------------------------------------------------------------------ records
    def get_record(self, identity: str) -> Optional[Dict[str, Any]]:
        try:
            response = self._records.get_item(Key={RECORD_KEY: identity}, ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            raise CatalogError(f"Error reading record for '{identity}': {e}") from e
        return response.get("Item")

    def is_processed(self, identity: str) -> bool:
        return self.get_record(identity) is not None

    def _source_completion_op(self, item: WorkItem, identity: str, processed_at: str) -> Dict[str, Any]:
        key = _serialize({SOURCE_KEY: item.source_url})
        if self.completion_mode == "move":
            return {"Delete": {"TableName": self.source_table_name, "Key": key}}
        return {
            "Update": {
                "TableName": self.source_table_name,
                "Key": key,
                "UpdateExpression": "SET #p = :p, #i = :i, #at = :at",
                "ExpressionAttributeNames": {"#p": "processed", "#i": "identity", "#at": "processed_at"},
                "ExpressionAttributeValues": _serialize({":p": True, ":i": identity, ":at": processed_at}),
            }
        }

    def record_completion(self, record: MetadataRecord, item: WorkItem) -> None:
        """
        Write the record and flip (or move) the source item in one transaction.

        If a record for the identity already exists, nothing is overwritten and
        only the source flag is flipped. A record written for a different
        source URL raises CatalogError and leaves the flag alone.
        """
        put = {
            "Put": {
                "TableName": self.records_table_name,
                "Item": _serialize(record.to_dict()),
                "ConditionExpression": "attribute_not_exists(#id)",
                "ExpressionAttributeNames": {"#id": RECORD_KEY},
            }
        }
        source_op = self._source_completion_op(item, record.identity, record.processed_at)
        try:
            self._client.transact_write_items(TransactItems=[put, source_op])
        except ClientError as e:
            reasons = e.response.get("CancellationReasons") or []
            if _error_code(e) == "TransactionCanceledException" and reasons \
                    and reasons[0].get("Code") == "ConditionalCheckFailed":
                existing = self.get_record(record.identity) or {}
                if existing.get("source_url") != record.source_url:
                    raise CatalogError(
                        f"Identity collision on '{record.identity}': record belongs to "
                        f"{existing.get('source_url')}, not {record.source_url}") from e
                log.warning(f"Record for '{record.identity}' already exists; only flipping source flag")
                self.mark_processed(item, record.identity, record.processed_at)
                return
            raise CatalogError(f"Error recording completion for '{record.identity}': {e}") from e
        except BotoCoreError as e:
            raise CatalogError(f"Error recording completion for '{record.identity}': {e}") from e
        log.info(f"Recorded '{record.identity}' in '{self.records_table_name}' ({self.completion_mode})")

    def mark_processed(self, item: WorkItem, identity: str, processed_at: str) -> None:
        """Flip (or, in move mode, remove) the source item. Safe to repeat."""
        try:
            if self.completion_mode == "move":
                self._sources.delete_item(Key={SOURCE_KEY: item.source_url})
            else:
                self._sources.update_item(
                    Key={SOURCE_KEY: item.source_url},
                    UpdateExpression="SET #p = :p, #i = :i, #at = :at",
                    ExpressionAttributeNames={"#p": "processed", "#i": "identity", "#at": "processed_at"},
                    ExpressionAttributeValues={":p": True, ":i": identity, ":at": processed_at},
                )
        except (ClientError, BotoCoreError) as e:
            raise CatalogError(f"Error marking {item.source_url} processed: {e}") from e

    # ------------------------------------------------------------------ claims
    def claim(self, identity: str, owner: str) -> bool:
        """Take the exclusive right to process `identity`. False if someone else holds it."""
        with self._local_lock:
            if identity in self._local_claims:
                return False
            self._local_claims.add(identity)
        if self._claims is None:
            return True
        now = int(self._clock())
        try:
            self._claims.put_item(
                Item={CLAIM_KEY: identity, "owner": owner, "expires_at": now + self.lease_seconds},
                ConditionExpression=Attr(CLAIM_KEY).not_exists() | Attr("expires_at").lt(now),
            )
            return True
        except ClientError as e:
            self._drop_local(identity)
            if _error_code(e) == "ConditionalCheckFailedException":
                log.info(f"'{identity}' is claimed by another worker")
                return False
            raise CatalogError(f"Error claiming '{identity}': {e}") from e
        except BotoCoreError as e:
            self._drop_local(identity)
            raise CatalogError(f"Error claiming '{identity}': {e}") from e

    def release(self, identity: str, owner: str) -> None:
        self._drop_local(identity)
        if self._claims is None:
            return
        try:
            self._claims.delete_item(
                Key={CLAIM_KEY: identity},
                ConditionExpression=Attr("owner").eq(owner),
            )
        except ClientError as e:
            if _error_code(e) != "ConditionalCheckFailedException":
                log.error(f"Error releasing claim on '{identity}': {e}")
        except BotoCoreError as e:
            log.error(f"Error releasing claim on '{identity}': {e}")

    def _drop_local(self, identity: str) -> None:
        with self._local_lock:
            self._local_claims.discard(identity)
