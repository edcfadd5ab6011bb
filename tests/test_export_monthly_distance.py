import unittest
from datetime import datetime
from unittest.mock import patch

from scripts.export_monthly_distance import (
    LATEST_KEY,
    build_distance_report,
    report_key,
    scan_monthly_distance,
    upload_report,
)


class TestExportMonthlyDistance(unittest.TestCase):
    @patch('boto3.client')
    def test_scan_monthly_distance(self, mock_dynamodb):
        mock_dynamodb.return_value.get_paginator.return_value.paginate.return_value = [
            {"Items": [{"imei": {"S": "111"}, "date": {"S": "2023-11"}, "total_distance": {"N": "12.5"}}]},
            {"Items": [{"imei": {"S": "222"}, "date": {"S": "2023-12"}, "total_distance": {"N": "3"}}]},
        ]
        items = scan_monthly_distance("ride_data_monthly_distance")
        self.assertEqual(items, [
            {"imei": "111", "date": "2023-11", "total_distance": 12.5},
            {"imei": "222", "date": "2023-12", "total_distance": 3.0},
        ])
        mock_dynamodb.return_value.get_paginator.assert_called_once_with('scan')

    def test_build_distance_report(self):
        report = build_distance_report([
            {"imei": "222", "date": "2023-12", "total_distance": 3.0},
            {"imei": "111", "date": "2023-12", "total_distance": 1.0},
            {"imei": "111", "date": "2023-11", "total_distance": 12.5},
        ])
        self.assertEqual(list(report.columns), ["imei", "2023-11", "2023-12"])
        self.assertEqual(report.to_dict("records"), [
            {"imei": "111", "2023-11": 12.5, "2023-12": 1.0},
            {"imei": "222", "2023-11": 0.0, "2023-12": 3.0},
        ])

    def test_build_distance_report_empty(self):
        self.assertTrue(build_distance_report([]).empty)

    def test_report_key(self):
        self.assertEqual(
            report_key(datetime(2024, 3, 9, 16, 0, 0)),
            "monthly-distance/2024/03/09/2024-03-09-16-00-00-monthly_distance.csv",
        )

    @patch('boto3.client')
    def test_upload_report_writes_timestamped_and_latest(self, mock_s3):
        report = build_distance_report([{"imei": "111", "date": "2023-11", "total_distance": 12.5}])
        key = upload_report(report, bucket="reports", key="monthly-distance/run.csv")
        self.assertEqual(key, "monthly-distance/run.csv")
        calls = mock_s3.return_value.put_object.call_args_list
        self.assertEqual([c.kwargs["Key"] for c in calls], ["monthly-distance/run.csv", LATEST_KEY])
        self.assertEqual(calls[0].kwargs["Body"], b"imei,2023-11\n111,12.5\n")


if __name__ == '__main__':
    unittest.main()
