import boto3
import csv
import os
import logging

logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')
logger = logging.getLogger(__name__)

RIDE_TABLE = os.environ.get('RIDE_TABLE', 'ride_data')
REGION = os.environ.get('RIDE_DATA_REGION', 'ap-south-1')
RIDE_CSV_PATH = os.environ.get('RIDE_CSV_PATH', 'data/rides.csv')

REQUIRED_COLUMNS = ['imei', 'ride_type', 'ride_start', 'ride_distance']


def is_valid_ride(row):
    """Validate a CSV row before it is turned into a ride item"""
    missing = [k for k in REQUIRED_COLUMNS if k not in row]
    if missing:
        logger.warning(f"Missing columns {missing} in row: {row}")
        return False
    try:
        int(row['ride_start'])
        float(row['ride_distance'])
        return True
    except (ValueError, TypeError) as e:
        logger.warning(f"Invalid data format in row: {row}, Error: {e}")
        return False


def prepare_ride_item(row):
    # ride_distance stays a string, the aggregator parses it
    return {
        'imei': row['imei'],
        'ride_start': int(row['ride_start']),
        'ride_type': row['ride_type'],
        'ride_stats': {'ride_distance': row['ride_distance']},
    }


def load_rides(file_path, table_name=RIDE_TABLE):
    """Load rides from a CSV file into the source table, returns the number written"""
    logger.info(f"Loading rides from {file_path} into {table_name}")

    items = []
    with open(file_path, 'r', newline='', encoding='utf-8') as f:
        reader = csv.DictReader(f)
        for row_num, row in enumerate(reader, 1):
            cleaned_row = {k.strip(): v.strip() for k, v in row.items() if k and v}
            if is_valid_ride(cleaned_row):
                items.append(prepare_ride_item(cleaned_row))
            else:
                logger.warning(f"Skipping invalid row {row_num}: {cleaned_row}")

    if not items:
        logger.warning(f"No valid rides found in {file_path}")
        return 0

    table = boto3.resource('dynamodb', region_name=REGION).Table(table_name)
    with table.batch_writer() as writer:
        for item in items:
            writer.put_item(Item=item)

    logger.info(f"Loaded {len(items)} rides into {table_name}")
    return len(items)


if __name__ == "__main__":
    load_rides(RIDE_CSV_PATH)
