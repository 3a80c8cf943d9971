import logging
from typing import Optional

import requests

from .models import ApprovalRequest

NOTIFIARR_URL = "https://notifiarr.com/api/v1/notification/passthrough/{api_key}"

STATUS_COLOURS = {
    "pending": "E3A008",
    "approved": "377E22",
    "rejected": "D65845",
    "expired": "7F7F7F",
}

TRIGGER_LABELS = {
    "quota_exceeded": "Quota exceeded",
    "router_rule": "Router rule",
    "manual_flag": "User requires approval",
    "content_criteria": "Content criteria",
}


class Notifier:
    """Notifiarr passthrough for approval events. Without an API key it does nothing."""

    def __init__(self, api_key: Optional[str] = None, channel: Optional[str] = None,
                 timeout: int = 10, session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.channel = channel
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def send_passthrough(self, payload: dict) -> bool:
        if not self.api_key:
            logging.debug("No Notifiarr API key present, skipping notification")
            return False
        try:
            url = NOTIFIARR_URL.format(api_key=self.api_key)
            r = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logging.error(f"Notifiarr passthrough exception: {e}")
            return False
        if r.status_code == 200:
            logging.info("Notification sent via Notifiarr.")
            return True
        logging.error(f"Notifiarr passthrough failed {r.status_code}: {r.text}")
        return False

    def build_payload(self, request: ApprovalRequest, event: str) -> dict:
        icon = "🎬" if request.content_type == "movie" else "📺"
        routing = request.proposed_router_decision.proposed_routing
        fields = [
            {"title": "Requested By", "text": request.user_name or str(request.user_id), "inline": False},
            {"title": "Status", "text": request.status.capitalize(), "inline": True},
            {"title": "Trigger", "text": TRIGGER_LABELS.get(request.triggered_by, request.triggered_by),
             "inline": True},
        ]
        if routing is not None:
            fields.append({"title": "Proposed Instance", "text": str(routing.instance_id), "inline": True})
        if request.approval_reason:
            fields.append({"title": "Reason", "text": request.approval_reason, "inline": False})
        if request.approval_notes:
            fields.append({"title": "Notes", "text": request.approval_notes, "inline": False})

        return {
            "notification": {
                "update": False,
                "name": "Pulsarr",
                "event": f"{event} - {request.id}",
            },
            "discord": {
                "color": STATUS_COLOURS.get(request.status, "7F7F7F"),
                "ping": {"pingUser": 0, "pingRole": 0},
                "images": {"thumbnail": "", "image": ""},
                "text": {
                    "title": f"{icon} **{request.content_title}**",
                    "icon": "",
                    "content": "",
                    "description": "",
                    "fields": fields,
                    "footer": "Pulsarr Approvals",
                },
                "ids": {"channel": self.channel},
            },
        }

    def approval_required(self, request: ApprovalRequest) -> bool:
        return self.send_passthrough(self.build_payload(request, "Approval Required"))

    def approval_resolved(self, request: ApprovalRequest) -> bool:
        event = "Request Approved" if request.status == "approved" else "Request Rejected"
        return self.send_passthrough(self.build_payload(request, event))
