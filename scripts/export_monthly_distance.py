import boto3
import pandas as pd
import io
import os
import logging
from datetime import datetime

# --- Configuration ---
MONTHLY_DISTANCE_TABLE = os.environ.get('MONTHLY_DISTANCE_TABLE', 'ride_data_monthly_distance')
REPORT_BUCKET = os.environ.get('REPORT_BUCKET', 'ride-distance-reports')
REGION = os.environ.get('RIDE_DATA_REGION', 'ap-south-1')
BASE_PATH = 'monthly-distance/'
LATEST_KEY = f'{BASE_PATH}latest/monthly_distance.csv'

# --- Setup Logging ---
logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')
logger = logging.getLogger(__name__)


def report_key(now=None):
    now = now or datetime.utcnow()
    return f"{BASE_PATH}{now.strftime('%Y/%m/%d')}/{now.strftime('%Y-%m-%d-%H-%M-%S')}-monthly_distance.csv"


def scan_monthly_distance(table_name=MONTHLY_DISTANCE_TABLE):
    """Read every aggregate from the monthly distance table as plain dicts."""
    logger.info(f"Scanning DynamoDB table: {table_name}")
    dynamodb = boto3.client('dynamodb', region_name=REGION)
    paginator = dynamodb.get_paginator('scan')

    items = []
    for page in paginator.paginate(TableName=table_name):
        for item in page.get('Items', []):
            processed_item = {}
            for key, value in item.items():
                if 'S' in value:
                    processed_item[key] = value['S']
                elif 'N' in value:
                    processed_item[key] = float(value['N'])
            items.append(processed_item)

    logger.info(f"Finished scanning. Total items retrieved: {len(items)}")
    return items


def build_distance_report(items):
    """One row per imei, one column per month, 0.0 where a device has no rides."""
    df = pd.DataFrame(items, columns=['imei', 'date', 'total_distance'])
    if df.empty:
        return pd.DataFrame(columns=['imei'])

    report = df.pivot_table(
        index='imei', columns='date', values='total_distance', aggfunc='sum', fill_value=0.0
    )
    report = report.sort_index().sort_index(axis=1)
    report.columns.name = None
    return report.reset_index()


def upload_report(report, bucket=REPORT_BUCKET, key=None):
    key = key or report_key()
    csv_buffer = io.StringIO()
    report.to_csv(csv_buffer, index=False)
    body = csv_buffer.getvalue().encode('utf-8')

    s3 = boto3.client('s3', region_name=REGION)
    for target in (key, LATEST_KEY):
        logger.info(f"Uploading CSV to S3: s3://{bucket}/{target}")
        s3.put_object(Bucket=bucket, Key=target, Body=body, ContentType='text/csv')
    return key


def main():
    items = scan_monthly_distance()
    if not items:
        logger.warning("No monthly distance aggregates found")
        return None
    report = build_distance_report(items)
    logger.info("Report head:\n%s", report.head().to_string())
    return upload_report(report)


if __name__ == "__main__":
    main()
