import boto3
import logging
import os
import re
from collections import defaultdict, namedtuple
from datetime import datetime, timedelta, timezone
from enum import Enum
import botocore.exceptions

# Setup logging
logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())

RIDE_TABLE = os.environ.get("RIDE_TABLE", "ride_data")
MONTHLY_DISTANCE_TABLE = os.environ.get("MONTHLY_DISTANCE_TABLE", "ride_data_monthly_distance")
REGION = os.environ.get("RIDE_DATA_REGION", "ap-south-1")

RIDE_PROJECTION = "ride_start, ride_stats, ride_type"
QUALIFYING_RIDE_TYPE = "trip"
ACCEPTED_YEARS = (2023, 2024)
IST = timezone(timedelta(hours=5, minutes=30))
MAX_RIDE_START = 2**64 - 1

# Plain decimal or exponent notation, no whitespace or digit separators
DISTANCE_PATTERN = re.compile(
    r"[+-]?(?:(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?|inf|infinity|nan)",
    re.IGNORECASE,
)

EMPTY_IMEI_MESSAGE = "IMEI cannot be empty"


class ErrorKind(Enum):
    VALIDATION = "validation"
    UPSTREAM_QUERY = "upstream_query"
    MALFORMED_RECORD = "malformed_record"
    DOWNSTREAM_WRITE = "downstream_write"


class AggregationError(Exception):
    """Failure tagged with the ErrorKind that decides how the handler reports it."""

    def __init__(self, kind, message):
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def is_fatal(self):
        return self.kind is not ErrorKind.VALIDATION


AggregateKey = namedtuple("AggregateKey", ["imei", "ride_month"])


class MonthlyDistanceAccumulator:
    """Running distance sum per (imei, month) for a single invocation."""

    def __init__(self):
        self._totals = defaultdict(float)

    def add(self, key, amount):
        self._totals[key] += amount

    def items(self):
        return self._totals.items()

    def __iter__(self):
        return iter(self._totals)

    def __len__(self):
        return len(self._totals)

    def __contains__(self, key):
        return key in self._totals

    def __getitem__(self, key):
        return self._totals[key]


def get_dynamodb_client():
    return boto3.client("dynamodb", region_name=REGION)


def validate_request(event):
    """Return the imei list and month filter, or raise a VALIDATION error."""
    imeis = event.get("imeis")
    if imeis is None:
        imeis = ""
    if not isinstance(imeis, str):
        raise AggregationError(ErrorKind.VALIDATION, "IMEIs must be a comma-separated string")
    if not imeis:
        raise AggregationError(ErrorKind.VALIDATION, EMPTY_IMEI_MESSAGE)
    return imeis.split(","), event.get("input_ride_month")


def query_rides(client, imei):
    """
    Fetch the rides of one device, projected to the fields the aggregation reads.

    An empty imei short-circuits to no rides without calling DynamoDB.
    """
    if not imei:
        # DynamoDB rejects empty key values, nothing can match
        logger.info("Skipping empty imei in request")
        return []
    try:
        response = client.query(
            TableName=RIDE_TABLE,
            KeyConditionExpression="#imei = :imei",
            ExpressionAttributeNames={"#imei": "imei"},
            ExpressionAttributeValues={":imei": {"S": imei}},
            ProjectionExpression=RIDE_PROJECTION,
        )
    except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
        logger.error(f"Error querying ride data for imei={imei}: {e}")
        raise AggregationError(ErrorKind.UPSTREAM_QUERY, f"Error querying ride data for imei={imei}") from e

    items = response.get("Items", [])
    if response.get("LastEvaluatedKey"):
        logger.warning(f"Query for imei={imei} returned a partial result, only {len(items)} items are aggregated")
    logger.info(f"Found {len(items)} rides for imei={imei}")
    return items


def ride_month_from_timestamp(ride_start):
    return datetime.fromtimestamp(ride_start, tz=IST).strftime("%Y-%m")


def _parse_ride_start(item):
    raw = item.get("ride_start", {}).get("N")
    if raw is None:
        raise AggregationError(ErrorKind.MALFORMED_RECORD, f"Ride is missing a numeric ride_start: {item}")
    try:
        ride_start = int(raw)
    except ValueError:
        raise AggregationError(ErrorKind.MALFORMED_RECORD, f"Invalid ride_start {raw!r}") from None
    if ride_start < 0 or ride_start > MAX_RIDE_START:
        raise AggregationError(ErrorKind.MALFORMED_RECORD, f"Invalid ride_start {raw!r}")
    return ride_start


def _parse_ride_distance(item):
    ride_stats = item.get("ride_stats", {}).get("M")
    if ride_stats is None:
        raise AggregationError(ErrorKind.MALFORMED_RECORD, f"Ride is missing ride_stats: {item}")
    raw = ride_stats.get("ride_distance", {}).get("S")
    if raw is None:
        raise AggregationError(ErrorKind.MALFORMED_RECORD, f"Ride is missing ride_stats.ride_distance: {item}")
    if not DISTANCE_PATTERN.fullmatch(raw):
        logger.warning(f"Unparseable ride_distance {raw!r}, counting it as 0.0")
        return 0.0
    return float(raw)


def classify_ride(item, month_filter=None):
    """
    Return (ride_month, distance) for a ride that counts towards an aggregate,
    or None when the ride is filtered out.
    """
    if item.get("ride_type", {}).get("S") != QUALIFYING_RIDE_TYPE:
        return None

    ride_start = _parse_ride_start(item)
    try:
        ride_month = ride_month_from_timestamp(ride_start)
    except (OverflowError, OSError, ValueError):
        # past year 9999, outside ACCEPTED_YEARS
        logger.info(f"Skipping ride with ride_start {ride_start} beyond the supported date range")
        return None

    if int(ride_month[:4]) not in ACCEPTED_YEARS:
        return None
    if month_filter is not None and ride_month != month_filter:
        return None

    return ride_month, _parse_ride_distance(item)


def write_monthly_distance(client, accumulator):
    """Upsert every aggregate; the first failed write stops the rest."""
    for key, total_distance in accumulator.items():
        try:
            client.put_item(
                TableName=MONTHLY_DISTANCE_TABLE,
                Item={
                    "imei": {"S": key.imei},
                    "date": {"S": key.ride_month},
                    "total_distance": {"N": str(total_distance)},
                },
            )
        except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
            logger.error(f"Failed to write monthly distance for imei={key.imei}, month={key.ride_month}: {e}")
            raise AggregationError(
                ErrorKind.DOWNSTREAM_WRITE,
                f"Failed to write monthly distance for imei={key.imei}, month={key.ride_month}",
            ) from e
        logger.info(f"imei={key.imei} ride_month={key.ride_month} total_distance={total_distance}")


def build_result(accumulator):
    return [
        {"imei": key.imei, "ride_month": key.ride_month, "total_distance": total_distance}
        for key, total_distance in accumulator.items()
    ]


def aggregate_monthly_distance(client, imeis, month_filter=None):
    accumulator = MonthlyDistanceAccumulator()
    for imei in imeis:
        for item in query_rides(client, imei):
            classified = classify_ride(item, month_filter)
            if classified is None:
                continue
            ride_month, distance = classified
            accumulator.add(AggregateKey(imei, ride_month), distance)

    write_monthly_distance(client, accumulator)
    return build_result(accumulator)


def lambda_handler(event, context):
    try:
        imeis, month_filter = validate_request(event)
        logger.info(f"Aggregating monthly distance for {len(imeis)} imeis, month filter: {month_filter}")
        result = aggregate_monthly_distance(get_dynamodb_client(), imeis, month_filter)
    except AggregationError as e:
        if not e.is_fatal:
            logger.warning(f"Rejected request: {e.message}")
            return {"error": e.message}
        logger.error(f"Aggregation failed ({e.kind.value}): {e.message}")
        raise

    logger.info(f"Wrote {len(result)} monthly distance aggregates")
    return result
