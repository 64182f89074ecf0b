"""
Append-only storage for extracted product records.
"""
import glob
import json
import logging
import os
import threading
import uuid

import boto3

from ..common.config import AWS_REGION, DATASET_DIR, RESULT_PREFIX

logger = logging.getLogger(__name__)


class DatasetSink:
    """One JSON file per record in a local directory: 000000001.json, ..."""

    def __init__(self, directory=DATASET_DIR, purge=False):
        self.directory = directory
        self.lock = threading.Lock()
        os.makedirs(directory, exist_ok=True)

        existing = sorted(glob.glob(os.path.join(directory, '*.json')))
        if purge:
            for path in existing:
                os.remove(path)
            existing = []
            logger.info(f"Purged dataset directory {directory}")
        self.count = len(existing)

    def append(self, record):
        with self.lock:
            self.count += 1
            path = os.path.join(self.directory, f"{self.count:09d}.json")
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(record, f, indent=2, ensure_ascii=False)
        logger.debug(f"Stored record {self.count} at {path}")


class S3ResultSink:
    """One JSON object per record under ``<prefix>/<run_id>/`` in a bucket."""

    def __init__(self, bucket, prefix=RESULT_PREFIX, run_id=None, s3=None, region_name=AWS_REGION):
        self.bucket = bucket
        self.prefix = prefix.strip('/')
        self.run_id = run_id or f"run-{uuid.uuid4()}"
        self.s3 = s3 or boto3.client('s3', region_name=region_name)
        self.lock = threading.Lock()
        self.count = 0
        logger.info(f"Storing records in s3://{bucket}/{self.prefix}/{self.run_id}/")

    def append(self, record):
        with self.lock:
            self.count += 1
            key = f"{self.prefix}/{self.run_id}/{self.count:09d}.json"
        self.s3.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=json.dumps(record),
            ContentType='application/json'
        )
        logger.debug(f"Uploaded record to s3://{self.bucket}/{key}")
