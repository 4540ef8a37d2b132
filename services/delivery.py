from dataclasses import dataclass
from typing import Optional


@dataclass
class DeliveryResult:
    """Outcome of one provider call (email, SMS, WhatsApp or voice)."""

    success: bool
    external_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self):
        data = {'success': self.success}
        if self.external_id:
            data['external_id'] = self.external_id
        if self.error:
            data['error'] = self.error
        return data
