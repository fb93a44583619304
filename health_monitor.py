#!/usr/bin/env python3
"""
Workflow Automation Pro - Health Monitor
Polls /health, records response times and status, and alerts after repeated failures.

Usage:
    python health_monitor.py --once
    python health_monitor.py --interval 60 --url https://app.example.com
"""

import argparse
import asyncio
import json
import logging
import smtplib
import sys
import time
from collections import deque
from datetime import datetime, timedelta
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp
from dotenv import load_dotenv

load_dotenv()

from config import AppConfig

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

RESPONSE_TIME_WINDOW = 100


class HealthMonitor:
    def __init__(self, base_url: str = "http://localhost:8000", failure_threshold: int = 3,
                 alert_email: Optional[str] = None, metrics_file: Optional[Path] = None):
        self.health_endpoint = f"{base_url.rstrip('/')}/health"
        self.failure_threshold = failure_threshold
        self.alert_email = alert_email
        self.metrics_file = metrics_file
        self.alert_cooldown = timedelta(minutes=15)
        self.last_alert_time: Optional[datetime] = None
        self.consecutive_failures = 0
        self.response_times = deque(maxlen=RESPONSE_TIME_WINDOW)
        self.metrics: Dict[str, Any] = {
            "started_at": datetime.now(),
            "total_checks": 0,
            "successful_checks": 0,
            "failed_checks": 0,
            "last_status": "unknown",
            "last_status_code": None,
            "last_response_ms": None,
            "last_failure_reason": None
        }

    @property
    def average_response_ms(self) -> Optional[float]:
        if not self.response_times:
            return None
        return round(sum(self.response_times) / len(self.response_times), 1)

    async def check_health(self) -> bool:
        """One poll of the health endpoint; True when it reports healthy"""
        self.metrics["total_checks"] += 1
        started = time.monotonic()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(self.health_endpoint, timeout=aiohttp.ClientTimeout(total=10)) as response:
                    elapsed_ms = (time.monotonic() - started) * 1000
                    self.response_times.append(elapsed_ms)
                    self.metrics["last_response_ms"] = round(elapsed_ms, 1)
                    self.metrics["last_status_code"] = response.status

                    if response.status != 200:
                        return self.record_failure(f"HTTP {response.status}")

                    data = await response.json()
                    if data.get("status") != "healthy":
                        return self.record_failure(f"Reported status {data.get('status')}")
                    return self.record_success()

        except asyncio.TimeoutError:
            return self.record_failure("Timeout")
        except aiohttp.ClientError as e:
            return self.record_failure(f"Connection error: {e}")

    def record_success(self) -> bool:
        recovered = self.consecutive_failures >= self.failure_threshold
        self.consecutive_failures = 0
        self.metrics["successful_checks"] += 1
        self.metrics["last_status"] = "healthy"
        if recovered:
            logger.info("✅ Service recovered and is now healthy")
            self.send_alert("Workflow Automation Pro has RECOVERED", force=True)
        elif self.metrics["total_checks"] % 10 == 0:
            logger.info(f"✅ Health check #{self.metrics['total_checks']}: healthy "
                        f"(avg {self.average_response_ms}ms)")
        return True

    def record_failure(self, reason: str) -> bool:
        self.consecutive_failures += 1
        self.metrics["failed_checks"] += 1
        self.metrics["last_status"] = "unhealthy"
        self.metrics["last_failure_reason"] = reason
        logger.warning(f"⚠️ Health check failed: {reason} (failure #{self.consecutive_failures})")

        if self.consecutive_failures >= self.failure_threshold:
            self.send_alert(f"Workflow Automation Pro is DOWN - {reason}")
        return False

    def send_alert(self, message: str, force: bool = False):
        now = datetime.now()
        if not force and self.last_alert_time and now - self.last_alert_time < self.alert_cooldown:
            logger.info("Alert suppressed due to cooldown period")
            return
        self.last_alert_time = now
        logger.critical(f"🚨 ALERT: {message}")

        if self.alert_email and AppConfig.SMTP_HOST:
            try:
                self._email_alert(message)
            except (smtplib.SMTPException, OSError) as e:
                logger.error(f"Failed to send email alert: {e}")

    def _email_alert(self, message: str):
        body = "\n".join([
            message,
            "",
            f"Endpoint: {self.health_endpoint}",
            f"Checks: {self.metrics['total_checks']} ({self.metrics['failed_checks']} failed)",
            f"Consecutive failures: {self.consecutive_failures}",
            f"Average response: {self.average_response_ms}ms",
        ])
        msg = MIMEText(body, "plain")
        msg["From"] = AppConfig.SMTP_FROM_EMAIL or AppConfig.SMTP_USERNAME
        msg["To"] = self.alert_email
        msg["Subject"] = "🚨 Workflow Automation Pro Health Alert"

        with smtplib.SMTP(AppConfig.SMTP_HOST, AppConfig.SMTP_PORT) as server:
            server.starttls()
            if AppConfig.SMTP_USERNAME:
                server.login(AppConfig.SMTP_USERNAME, AppConfig.SMTP_PASSWORD)
            server.send_message(msg)
        logger.info(f"📧 Email alert sent to {self.alert_email}")

    def snapshot(self) -> Dict[str, Any]:
        data = dict(self.metrics)
        data["started_at"] = data["started_at"].isoformat()
        data["average_response_ms"] = self.average_response_ms
        return data

    def save_metrics(self):
        if not self.metrics_file:
            return
        try:
            self.metrics_file.write_text(json.dumps(self.snapshot(), indent=2))
        except OSError as e:
            logger.error(f"Failed to save metrics: {e}")

    async def monitor_loop(self, interval: int = 30):
        logger.info(f"🔍 Monitoring {self.health_endpoint} every {interval}s "
                    f"(alert after {self.failure_threshold} failures)")
        while True:
            await self.check_health()
            if self.metrics["total_checks"] % 20 == 0:
                self.save_metrics()
            await asyncio.sleep(interval)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Poll the application health endpoint")
    parser.add_argument("--url", default=AppConfig.BASE_URL, help="Base URL of the application")
    parser.add_argument("--once", action="store_true", help="Run a single check and exit with its status")
    parser.add_argument("--interval", type=int, default=30, help="Seconds between checks")
    parser.add_argument("--threshold", type=int, default=3, help="Consecutive failures before alerting")
    parser.add_argument("--alert-email", default=None, help="Address that receives alert emails")
    parser.add_argument("--metrics-file", type=Path, default=None, help="Where to write the metrics snapshot")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    monitor = HealthMonitor(args.url, args.threshold, args.alert_email, args.metrics_file)

    if args.once:
        healthy = await monitor.check_health()
        print(f"Health Status: {'✅ Healthy' if healthy else '❌ Unhealthy'} "
              f"({monitor.metrics['last_response_ms']}ms)")
        return 0 if healthy else 1

    await monitor.monitor_loop(args.interval)
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("🛑 Health monitor stopped by user")
