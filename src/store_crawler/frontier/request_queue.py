"""
Shared request queue for the distributed store crawler.

Every request is one item in a DynamoDB table keyed by the hash of its
identity key. All state changes are conditional writes, so concurrent
workers in different processes can enqueue, lease and resolve without any
other coordination:

    available --lease--> locked --resolve--> resolved | failed
                           |
                           +--lock expires--> leasable again

An entry that reaches resolved or failed is never handed out again, and
re-enqueueing a URL whose identity key is already in the table is a no-op.
"""
import heapq
import logging
import time
from collections import Counter

import boto3
from botocore.exceptions import ClientError

from ..common.config import AWS_REGION, DYNAMODB_ENDPOINT_URL, DEFAULT_LEASE_DURATION
from ..common.errors import QueueInvariantError, QueueNotInitializedError
from ..common.models import CrawlRequest, EntryState, EnqueueResult, Label, Outcome
from ..common.utils import to_decimal

logger = logging.getLogger(__name__)

ATTRIBUTE_NAMES = {
    '#state': 'state',
    '#label': 'label',
    '#owner': 'lock_owner',
    '#expires': 'lock_expires',
    '#pending': 'pending',
}

# Sparse index over entries that are available or locked, keyed by label and
# ordered by enqueue time. resolve() removes the key so finished entries drop out.
PENDING_INDEX = 'pending-index'
PENDING_PAGE_SIZE = 25

LEASABLE = '(#state = :available OR (#state = :locked AND #expires < :now))'


def _error_code(error):
    return error.response.get('Error', {}).get('Code')


def _label_filter(labels, values):
    """Append a label IN (...) clause, registering its values."""
    placeholders = []
    for i, label in enumerate(labels):
        key = f':label{i}'
        values[key] = Label(label).value
        placeholders.append(key)
    return f"#label IN ({', '.join(placeholders)})"


class RequestQueue:
    """
    Deduplicated, lease-based request queue shared by all worker processes.
    """

    def __init__(self, name, dynamodb=None, region_name=AWS_REGION,
                 endpoint_url=DYNAMODB_ENDPOINT_URL, clock=time.time):
        self.name = name
        self.dynamodb = dynamodb or boto3.resource(
            'dynamodb', region_name=region_name, endpoint_url=endpoint_url
        )
        self.table = self.dynamodb.Table(name)
        self.clock = clock

    # Opening
    @classmethod
    def initialize(cls, name, fresh=False, **kwargs):
        """
        Open the queue, creating its table if needed. With ``fresh`` the table
        is dropped and recreated first. Returns only once the table is active,
        so workers spawned afterwards never see a half-cleared queue.
        """
        queue = cls(name, **kwargs)
        if fresh:
            queue.drop()
        queue._ensure_table()
        return queue

    @classmethod
    def open(cls, name, **kwargs):
        """Open a queue that the master has already initialized."""
        queue = cls(name, **kwargs)
        if not queue.exists():
            raise QueueNotInitializedError(f"Request queue '{name}' does not exist")
        return queue

    def exists(self):
        try:
            self.dynamodb.meta.client.describe_table(TableName=self.name)
            return True
        except ClientError as e:
            if _error_code(e) == 'ResourceNotFoundException':
                return False
            raise

    def _ensure_table(self):
        if self.exists():
            logger.info(f"Using existing request queue '{self.name}'")
            return

        logger.info(f"Creating request queue table '{self.name}'")
        self.dynamodb.create_table(
            TableName=self.name,
            KeySchema=[{'AttributeName': 'request_id', 'KeyType': 'HASH'}],
            AttributeDefinitions=[
                {'AttributeName': 'request_id', 'AttributeType': 'S'},
                {'AttributeName': 'pending', 'AttributeType': 'S'},
                {'AttributeName': 'enqueued_at', 'AttributeType': 'N'}
            ],
            GlobalSecondaryIndexes=[{
                'IndexName': PENDING_INDEX,
                'KeySchema': [
                    {'AttributeName': 'pending', 'KeyType': 'HASH'},
                    {'AttributeName': 'enqueued_at', 'KeyType': 'RANGE'}
                ],
                'Projection': {'ProjectionType': 'ALL'}
            }],
            BillingMode='PAY_PER_REQUEST'
        )
        self.dynamodb.meta.client.get_waiter('table_exists').wait(TableName=self.name)
        logger.info(f"Request queue '{self.name}' is ready")

    def drop(self):
        """Delete the queue table and everything in it."""
        try:
            self.table.delete()
        except ClientError as e:
            if _error_code(e) == 'ResourceNotFoundException':
                return
            raise
        self.dynamodb.meta.client.get_waiter('table_not_exists').wait(TableName=self.name)
        logger.info(f"Dropped request queue '{self.name}'")

    # Adding work
    def enqueue(self, request):
        """Add ``request`` unless its identity key has been seen before."""
        item = {
            'request_id': request.request_id,
            'unique_key': request.unique_key,
            'url': request.url,
            'label': request.label.value,
            'depth': request.depth,
            'state': EntryState.AVAILABLE.value,
            'pending': request.label.value,
            'enqueued_at': to_decimal(self.clock()),
            'lease_count': 0
        }
        try:
            self.table.put_item(
                Item=item,
                ConditionExpression='attribute_not_exists(request_id)'
            )
        except ClientError as e:
            if _error_code(e) == 'ConditionalCheckFailedException':
                logger.debug(f"Already in queue: {request.unique_key}")
                return EnqueueResult.ALREADY_PRESENT
            raise

        logger.debug(f"Enqueued {request.label.value} {request.url}")
        return EnqueueResult.ADDED

    def enqueue_many(self, requests):
        """Enqueue each request; returns how many were new."""
        added = 0
        for request in requests:
            if self.enqueue(request) is EnqueueResult.ADDED:
                added += 1
        return added

    # Leasing
    def lease(self, worker_id, lease_duration=DEFAULT_LEASE_DURATION, labels=None):
        """
        Claim one leasable entry for ``worker_id`` until ``now + lease_duration``.

        Available entries and locked entries whose lease has expired are both
        candidates, oldest first. Losing a race for a candidate to another
        worker just moves on to the next one. Returns None when nothing can
        be leased right now.
        """
        values = {
            ':available': EntryState.AVAILABLE.value,
            ':locked': EntryState.LOCKED.value,
            ':now': to_decimal(self.clock()),
        }
        # Each label's pending entries come back oldest first; merge lazily so
        # only the pages needed to win one lock are read.
        candidates = heapq.merge(
            *(self._pending(label, LEASABLE, values) for label in self._labels(labels)),
            key=lambda item: (item['enqueued_at'], item['request_id'])
        )
        for item in candidates:
            request = self._try_lock(item['request_id'], worker_id, lease_duration)
            if request is not None:
                return request
        return None

    def _try_lock(self, request_id, worker_id, lease_duration):
        now = self.clock()
        update_expression = (
            "SET #state = :locked, #owner = :owner, #expires = :expires, "
            "lease_count = if_not_exists(lease_count, :zero) + :one"
        )
        condition = f"attribute_exists(request_id) AND {LEASABLE}"
        try:
            response = self.table.update_item(
                Key={'request_id': request_id},
                UpdateExpression=update_expression,
                ConditionExpression=condition,
                ExpressionAttributeNames=self._names_for(update_expression + condition),
                ExpressionAttributeValues={
                    ':available': EntryState.AVAILABLE.value,
                    ':locked': EntryState.LOCKED.value,
                    ':now': to_decimal(now),
                    ':owner': worker_id,
                    ':expires': to_decimal(now + lease_duration),
                    ':zero': 0,
                    ':one': 1
                },
                ReturnValues='ALL_NEW'
            )
        except ClientError as e:
            if _error_code(e) == 'ConditionalCheckFailedException':
                logger.debug(f"Lost lease race for {request_id}")
                return None
            raise

        item = response['Attributes']
        if item.get('lease_count', 1) > 1:
            logger.info(f"Re-leased {item['url']} after an expired lock (lease #{item['lease_count']})")
        logger.debug(f"{worker_id} leased {item['url']} until {item['lock_expires']}")
        return self._to_request(item)

    # Finishing work
    def resolve(self, request_id, outcome, worker_id, error=None):
        """
        Move a locked entry held by ``worker_id`` to a terminal state.

        Raises QueueInvariantError when the entry is unknown or no longer
        locked by ``worker_id``.
        """
        outcome = Outcome(outcome)
        set_clause = "SET #state = :outcome, handled_by = :owner, handled_at = :now"
        values = {
            ':outcome': outcome.value,
            ':locked': EntryState.LOCKED.value,
            ':owner': worker_id,
            ':now': to_decimal(self.clock()),
        }
        if error:
            set_clause += ", error_message = :error"
            values[':error'] = str(error)[:1024]  # Truncate long error messages

        update_expression = f"{set_clause} REMOVE #owner, #expires, #pending"
        condition = "attribute_exists(request_id) AND #state = :locked AND #owner = :owner"
        try:
            self.table.update_item(
                Key={'request_id': request_id},
                UpdateExpression=update_expression,
                ConditionExpression=condition,
                ExpressionAttributeNames=self._names_for(update_expression + condition),
                ExpressionAttributeValues=values
            )
        except ClientError as e:
            if _error_code(e) != 'ConditionalCheckFailedException':
                raise
            item = self.get_entry(request_id)
            if item is None:
                raise QueueInvariantError(f"{worker_id} resolved unknown entry {request_id}") from e
            raise QueueInvariantError(
                f"{worker_id} resolved {item['url']} but it is {item['state']}"
                f" (owner: {item.get('lock_owner')})"
            ) from e

        logger.debug(f"{worker_id} marked {request_id} {outcome.value}")

    # Inspection
    def is_finished(self, labels=None):
        """
        True when no entry is available or locked. An expired lock is still
        pending work since any worker can lease it again.

        Any entry in the pending index means work is left. Index reads are
        eventually consistent, so an empty index is confirmed with a
        consistent scan before the queue is reported finished.
        """
        labels = self._labels(labels)
        for label in labels:
            if next(self._pending(label, limit=1), None) is not None:
                return False

        values = {
            ':available': EntryState.AVAILABLE.value,
            ':locked': EntryState.LOCKED.value,
        }
        filter_expression = f"#state IN (:available, :locked) AND {_label_filter(labels, values)}"
        return self._count(filter_expression, values) == 0

    def stats(self):
        """Number of entries in each state."""
        counts = Counter()
        kwargs = {
            'ProjectionExpression': '#state',
            'ExpressionAttributeNames': {'#state': 'state'},
            'ConsistentRead': True
        }
        while True:
            response = self.table.scan(**kwargs)
            counts.update(item['state'] for item in response.get('Items', []))
            if 'LastEvaluatedKey' not in response:
                break
            kwargs['ExclusiveStartKey'] = response['LastEvaluatedKey']
        return {state.value: counts.get(state.value, 0) for state in EntryState}

    def get_entry(self, request_id):
        response = self.table.get_item(Key={'request_id': request_id}, ConsistentRead=True)
        return response.get('Item')

    def _pending(self, label, filter_expression=None, values=None, limit=PENDING_PAGE_SIZE):
        """Entries of one label in the pending index, oldest first, a page at a time."""
        key_condition = '#pending = :pending'
        kwargs = {
            'IndexName': PENDING_INDEX,
            'KeyConditionExpression': key_condition,
            'ExpressionAttributeNames': self._names_for(f"{key_condition} {filter_expression or ''}"),
            'ExpressionAttributeValues': {**(values or {}), ':pending': label.value},
            'Limit': limit
        }
        if filter_expression:
            kwargs['FilterExpression'] = filter_expression
        while True:
            response = self.table.query(**kwargs)
            yield from response.get('Items', [])
            if 'LastEvaluatedKey' not in response:
                break
            kwargs['ExclusiveStartKey'] = response['LastEvaluatedKey']

    def _scan(self, filter_expression, values, projection=None):
        kwargs = {
            'FilterExpression': filter_expression,
            'ExpressionAttributeNames': self._names_for(filter_expression),
            'ExpressionAttributeValues': values,
            'ConsistentRead': True
        }
        if projection:
            kwargs['ProjectionExpression'] = projection
        while True:
            response = self.table.scan(**kwargs)
            yield from response.get('Items', [])
            if 'LastEvaluatedKey' not in response:
                break
            kwargs['ExclusiveStartKey'] = response['LastEvaluatedKey']

    def _count(self, filter_expression, values):
        return sum(1 for _ in self._scan(filter_expression, values, projection='request_id'))

    @staticmethod
    def _labels(labels):
        return [Label(label) for label in labels] if labels else list(Label)

    @staticmethod
    def _names_for(expression):
        # DynamoDB rejects attribute names that the expression does not use
        return {k: v for k, v in ATTRIBUTE_NAMES.items() if k in expression}

    @staticmethod
    def _to_request(item):
        return CrawlRequest(
            url=item['url'],
            label=Label(item['label']),
            unique_key=item['unique_key'],
            depth=int(item.get('depth', 0))
        )
