"""
Mongo Executor - Runs one document-store operation per step.

Payloads (filter, document, update, pipeline, command) are rendered and
parsed as MongoDB Extended JSON. Results are encoded as canonical Extended
JSON before save paths are evaluated, so ObjectIds are read with
`_id.$oid` and integers with `count.$numberInt`.

Libraries:
- pymongo: MongoDB driver (bson.json_util for Extended JSON)
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from bson import json_util
from bson.errors import BSONError
from bson.json_util import CANONICAL_JSON_OPTIONS
from pymongo import MongoClient
from pymongo.errors import ConfigurationError as MongoConfigurationError
from pymongo.errors import PyMongoError

from .. import config
from ..engine.executor_interface import (
    ConfigurationError, ProtocolError, StepContext, StepExecutor,
    ensure_expected_affected_rows, run_cancellable,
)
from ..engine.extraction import save_response_values
from ..models.flow import MongoStep, StepKind

logger = logging.getLogger(__name__)

OP_FIND_ONE = "findone"
OP_FIND = "find"
OP_AGGREGATE = "aggregate"
OP_INSERT_ONE = "insertone"
OP_UPDATE_ONE = "updateone"
OP_DELETE_ONE = "deleteone"
OP_COMMAND = "command"

OPERATION_ALIASES: Dict[str, str] = {
    "": OP_FIND_ONE,
    "findone": OP_FIND_ONE,
    "find_one": OP_FIND_ONE,
    "find": OP_FIND,
    "findmany": OP_FIND,
    "find_many": OP_FIND,
    "aggregate": OP_AGGREGATE,
    "insert": OP_INSERT_ONE,
    "insertone": OP_INSERT_ONE,
    "insert_one": OP_INSERT_ONE,
    "update": OP_UPDATE_ONE,
    "updateone": OP_UPDATE_ONE,
    "update_one": OP_UPDATE_ONE,
    "delete": OP_DELETE_ONE,
    "deleteone": OP_DELETE_ONE,
    "delete_one": OP_DELETE_ONE,
    "command": OP_COMMAND,
}


def normalize_operation(operation: str) -> Optional[str]:
    """
    Map an operation name or alias to its canonical form.

    Returns:
        Canonical operation, or None if unsupported
    """
    return OPERATION_ALIASES.get(operation.strip().lower())


def parse_document(payload: str) -> Dict[str, Any]:
    """
    Parse an Extended JSON document. Blank payloads are an empty document.

    Raises:
        ValueError: If the payload is not a JSON object
    """
    trimmed = payload.strip()
    if not trimmed:
        return {}
    document = json_util.loads(trimmed)
    if not isinstance(document, dict):
        raise ValueError("expected a JSON object")
    return document


def parse_pipeline(payload: str) -> List[Any]:
    """
    Parse an Extended JSON aggregation pipeline.

    Raises:
        ValueError: If the payload is blank or not a JSON array
    """
    trimmed = payload.strip()
    if not trimmed:
        raise ValueError("pipeline is required")
    pipeline = json_util.loads(trimmed)
    if not isinstance(pipeline, list):
        raise ValueError("expected a JSON array")
    return pipeline


def to_extended_json(value: Any) -> str:
    """Encode a result as canonical Extended JSON."""
    return json_util.dumps(value, json_options=CANONICAL_JSON_OPTIONS)


def default_client_factory(uri: str, timeout: int) -> MongoClient:
    timeout_ms = timeout * 1000
    return MongoClient(
        uri,
        serverSelectionTimeoutMS=timeout_ms,
        connectTimeoutMS=timeout_ms,
        socketTimeoutMS=timeout_ms,
    )


class MongoExecutor(StepExecutor):
    """
    Document-store step executor.

    Connection targets fall back from the step's `mongo` block to the
    `mongo_uri`, `mongo_database` and `mongo_collection` variables, and for
    the URI finally to the MONGO_URI environment variable.
    """

    def __init__(self, client_factory: Optional[Callable[[str, int], Any]] = None):
        """
        Initialize executor.

        Args:
            client_factory: Builds a client from (uri, timeout_seconds)
        """
        self.client_factory = client_factory or default_client_factory

    @property
    def kind(self) -> StepKind:
        return StepKind.MONGO

    def execute(self, context: StepContext) -> None:
        """Run the operation, check the affected count and save values."""
        step = context.step
        cfg = step.mongo
        if cfg is None:
            raise ConfigurationError(step.name, "missing mongo configuration")

        operation = normalize_operation(cfg.operation)
        if operation is None:
            raise ConfigurationError(step.name, f"unsupported mongo operation \"{cfg.operation}\"")

        uri, database, collection = self._resolve_target(context, cfg, operation)
        target_label = f"{database}.{collection}" if collection else database
        context.log.set_request(operation=operation, target=target_label)

        # Payloads are parsed before connecting so bad input fails fast
        args = self._parse_payloads(context, cfg, operation)

        try:
            client = self.client_factory(uri, context.timeout)
        except MongoConfigurationError as e:
            raise ConfigurationError(step.name, f"mongo client: {e}", e) from e
        except PyMongoError as e:
            raise ProtocolError(step.name, f"mongo client: {e}", e) from e

        def operate() -> Tuple[int, Any]:
            try:
                client.admin.command("ping")
            except PyMongoError as e:
                raise ProtocolError(step.name, f"ping mongo: {e}", e) from e

            logger.info(f"[mongo] {step.name}: {operation.upper()} {target_label}")

            try:
                return self._run(client[database], collection, operation, cfg, args)
            except PyMongoError as e:
                raise ProtocolError(step.name, f"mongo {operation} failed: {e}", e) from e

        try:
            affected, payload = run_cancellable(context, operate, on_cancel=client.close)
        finally:
            client.close()

        result = to_extended_json(payload)
        context.log.set_response(affected=affected, body=result)
        logger.info(f"[mongo] {step.name}: affected={affected}")

        ensure_expected_affected_rows(step, affected)

        if step.save:
            save_response_values(step.name, result, step.save, context.variables)

    def _resolve_target(self, context: StepContext, cfg: MongoStep,
                        operation: str) -> Tuple[str, str, str]:
        name = context.name
        variables = context.variables

        uri = context.render(cfg.uri).strip() or variables.get("mongo_uri").strip() or config.get_mongo_uri()
        if not uri:
            raise ConfigurationError(name, "requires mongo.uri (field, var mongo_uri, or MONGO_URI env)")

        database = context.render(cfg.database).strip() or variables.get("mongo_database").strip()
        if not database:
            raise ConfigurationError(name, "requires mongo.database (field or mongo_database var)")

        collection = ""
        if operation != OP_COMMAND:
            collection = context.render(cfg.collection).strip() or variables.get("mongo_collection").strip()
            if not collection:
                raise ConfigurationError(name, f"requires mongo.collection for operation \"{operation}\"")

        return uri, database, collection

    def _parse_payloads(self, context: StepContext, cfg: MongoStep, operation: str) -> Dict[str, Any]:
        name = context.name
        args: Dict[str, Any] = {}

        def parse(field: str, parser: Callable[[str], Any]) -> Any:
            try:
                return parser(context.render(getattr(cfg, field)))
            except (ValueError, BSONError) as e:
                raise ConfigurationError(name, f"parse mongo {field}: {e}", e) from e

        if operation in (OP_FIND_ONE, OP_FIND, OP_UPDATE_ONE, OP_DELETE_ONE):
            args["filter"] = parse("filter", parse_document)

        if operation == OP_AGGREGATE:
            args["pipeline"] = parse("pipeline", parse_pipeline)

        elif operation == OP_INSERT_ONE:
            args["document"] = parse("document", parse_document)
            if not args["document"]:
                raise ConfigurationError(name, "mongo document is required for insertOne")

        elif operation == OP_UPDATE_ONE:
            args["update"] = parse("update", parse_document)
            if not args["update"]:
                raise ConfigurationError(name, "mongo update document is required for updateOne")

        elif operation == OP_COMMAND:
            if not context.render(cfg.command).strip():
                raise ConfigurationError(name, "mongo command payload is required")
            args["command"] = parse("command", parse_document)

        return args

    def _run(self, db, collection_name: str, operation: str, cfg: MongoStep,
             args: Dict[str, Any]) -> Tuple[int, Any]:
        """
        Execute the operation.

        Returns:
            Tuple of (affected count, result payload)
        """
        if operation == OP_COMMAND:
            reply = db.command(args["command"])
            return 1, reply

        collection = db[collection_name]

        if operation == OP_FIND_ONE:
            document = collection.find_one(args["filter"])
            return (0, None) if document is None else (1, document)

        if operation == OP_FIND:
            cursor = collection.find(args["filter"])
            if cfg.limit > 0:
                cursor = cursor.limit(cfg.limit)
            documents = list(cursor)
            return len(documents), documents

        if operation == OP_AGGREGATE:
            documents = list(collection.aggregate(args["pipeline"]))
            return len(documents), documents

        if operation == OP_INSERT_ONE:
            result = collection.insert_one(args["document"])
            return 1, {"inserted_id": result.inserted_id}

        if operation == OP_UPDATE_ONE:
            result = collection.update_one(args["filter"], args["update"])
            upserted_count = 1 if result.upserted_id is not None else 0
            affected = result.modified_count or upserted_count
            payload = {
                "matched_count": result.matched_count,
                "modified_count": result.modified_count,
                "upserted_count": upserted_count,
            }
            if result.upserted_id is not None:
                payload["upserted_id"] = result.upserted_id
            return affected, payload

        # OP_DELETE_ONE
        result = collection.delete_one(args["filter"])
        return result.deleted_count, {"deleted_count": result.deleted_count}
