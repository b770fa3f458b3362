"""fake_dynamodb.py — In-memory stand-in for the low-level DynamoDB client.

Implements the subset of calls rollmodel_shared.store makes, over items kept
in their serialized attribute-value form. Used by the layer and Lambda tests:

    fake = FakeDynamoClient()
    monkeypatch.setattr(store, "_get_ddb", lambda: fake)
"""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Tuple


class FakeDynamoClient:
    def __init__(self) -> None:
        self.items: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.calls: List[str] = []

    @staticmethod
    def _key_of(key: Dict[str, Any]) -> Tuple[str, str]:
        return key["PK"]["S"], key["SK"]["S"]

    def put_item(self, TableName: str, Item: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append("put_item")
        self.items[self._key_of(Item)] = copy.deepcopy(Item)
        return {}

    def get_item(self, TableName: str, Key: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append("get_item")
        item = self.items.get(self._key_of(Key))
        return {"Item": copy.deepcopy(item)} if item else {}

    def delete_item(self, TableName: str, Key: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append("delete_item")
        self.items.pop(self._key_of(Key), None)
        return {}

    def batch_write_item(self, RequestItems: Dict[str, List[Dict[str, Any]]]) -> Dict[str, Any]:
        self.calls.append("batch_write_item")
        for requests in RequestItems.values():
            for request in requests:
                if "PutRequest" in request:
                    item = request["PutRequest"]["Item"]
                    self.items[self._key_of(item)] = copy.deepcopy(item)
                elif "DeleteRequest" in request:
                    self.items.pop(self._key_of(request["DeleteRequest"]["Key"]), None)
        return {"UnprocessedItems": {}}

    def query(self, **params: Any) -> Dict[str, Any]:
        self.calls.append("query")
        values = params["ExpressionAttributeValues"]
        pk = values[":pk"]["S"]
        prefix = values[":prefix"]["S"] if ":prefix" in values else ""
        keys = sorted(
            (k for k in self.items if k[0] == pk and k[1].startswith(prefix)),
            key=lambda k: k[1],
            reverse=not params.get("ScanIndexForward", True),
        )
        limit = params.get("Limit")
        if limit:
            keys = keys[:limit]
        return {"Items": [copy.deepcopy(self.items[k]) for k in keys]}

    # Test helpers

    def keys_with_prefix(self, pk: str, sk_prefix: str = "") -> List[str]:
        return sorted(sk for p, sk in self.items if p == pk and sk.startswith(sk_prefix))
