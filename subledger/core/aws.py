from __future__ import annotations

import boto3

from .settings import S

_session = boto3.session.Session(region_name=S.aws_region or "us-east-1")

ddb = _session.resource("dynamodb")

# The resource's client keeps boto3's Python <-> DynamoDB type marshalling,
# which transact_write_items needs for native item dicts.
ddb_client = ddb.meta.client
