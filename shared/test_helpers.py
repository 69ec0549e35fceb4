"""
Test helper functions and factory methods for the CRM Automation service.
"""

import uuid
from typing import Dict, Any, Optional, List
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass
import jwt


@dataclass
class TestUser:
    """Test user data."""
    user_id: str
    org_id: str
    crm_role: str


class TestDataFactory:
    """Factory for creating test payloads."""

    @staticmethod
    def create_test_users() -> List[TestUser]:
        """Create one user per CRM role in org-1, plus an admin in org-2."""
        return [
            TestUser(user_id="admin-1", org_id="org-1", crm_role="crm_admin"),
            TestUser(user_id="manager-1", org_id="org-1", crm_role="crm_manager"),
            TestUser(user_id="agent-1", org_id="org-1", crm_role="crm_agent"),
            TestUser(user_id="viewer-1", org_id="org-1", crm_role="crm_viewer"),
            TestUser(user_id="admin-2", org_id="org-2", crm_role="crm_admin"),
        ]

    @staticmethod
    def create_record_payload(module_id: str = "leads", **overrides) -> Dict[str, Any]:
        """Create a record payload as accepted by the records and events endpoints."""
        payload = {
            "id": f"rec-{uuid.uuid4().hex[:8]}",
            "module_id": module_id,
            "title": "Acme Corp",
            "status": "open",
            "stage": "new",
            "owner_id": "agent-1",
            "email": "buyer@acme.example",
            "phone": "+15550100",
            "tags": ["inbound"],
            "data": {"amount": 5000, "region": "EMEA", "source": "website"},
        }
        payload.update(overrides)
        return payload

    @staticmethod
    def create_workflow_payload(module_id: str = "leads", trigger_type: str = "on_create",
                                **overrides) -> Dict[str, Any]:
        """Create a workflow payload that tags large EMEA deals and opens a task."""
        payload = {
            "name": "Large EMEA deal",
            "module_id": module_id,
            "trigger_type": trigger_type,
            "trigger_config": {},
            "conditions": {
                "match": "all",
                "rules": [
                    {"field": "amount", "operator": "greater_than", "value": 1000},
                    {"field": "region", "operator": "equals", "value": "emea"},
                ],
            },
            "actions": [
                {"type": "add_tag", "config": {"tag": "large-deal"}},
                {"type": "create_task", "config": {"title": "Call {{title}}", "assigned_to": "owner"}},
            ],
            "priority": 10,
        }
        payload.update(overrides)
        return payload

    @staticmethod
    def create_cadence_payload(module_id: str = "leads") -> Dict[str, Any]:
        """Create a three step cadence: email now, call in two days, wait."""
        return {
            "name": "New lead follow-up",
            "module_id": module_id,
            "steps": [
                {"type": "email", "delay_days": 0, "config": {"subject": "Hello {{title}}", "body": "Hi"}},
                {"type": "call", "delay_days": 2, "config": {"title": "Follow-up call"}},
                {"type": "wait", "delay_days": 1},
            ],
        }


class MockTokenGenerator:
    """Generate session JWTs for testing."""

    def __init__(self, secret: str = "test-secret", algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm

    def generate_access_token(self, user: TestUser, expires_in: int = 3600,
                              extra_claims: Optional[Dict[str, Any]] = None) -> str:
        """Generate a session token for user."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user.user_id,
            "org_id": user.org_id,
            "crm_role": user.crm_role,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
        }
        payload.update(extra_claims or {})
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def auth_headers(self, user: TestUser, **kwargs) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.generate_access_token(user, **kwargs)}"}


class TestEnvironment:
    """Test environment configuration."""

    @staticmethod
    def get_mock_config() -> Dict[str, Any]:
        """Get mock environment configuration."""
        return {
            "AUTOMATION_ENV": "test",
            "AUTOMATION_LOG_LEVEL": "debug",
            "AUTOMATION_JWT_SECRET": "test-secret",
            "AUTOMATION_CRON_SECRET": "test-cron-secret",
            "AUTOMATION_SCHEDULER_BATCH_SIZE": "100",
            "AUTOMATION_RETRY_BASE_DELAY_SECONDS": "60",
        }


# Global instances for easy access
test_data_factory = TestDataFactory()
mock_token_generator = MockTokenGenerator()
test_environment = TestEnvironment()
