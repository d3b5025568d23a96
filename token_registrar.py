"""Push token registration for this device.

Obtains a delivery token after the notification permission is granted and
saves it to the remote push_tokens table, keyed by (user_id, token) and
tagged with the device id, platform and token type, and deletes it again
on sign-out or rotation. Every failure here is non-fatal: the service keeps
running without push delivery for the device.
"""

from datetime import datetime, timezone
from typing import Optional

from config import settings
from device import DeviceEnvironment, DeviceError
from logger_config import setup_logger
from schemas import PermissionStatus, TokenRegistration, TokenType
from store_client import ReminderStore, StoreError

logger = setup_logger(__name__, 'tokens.log')

ANDROID_CHANNEL_ID = 'reminders'
ANDROID_CHANNEL_NAME = 'Reminders'


class TokenRegistrar:
    """Registers and persists the device's push token."""

    def __init__(
        self,
        device: DeviceEnvironment,
        store: ReminderStore,
        user_id: str,
        project_id: Optional[str] = None
    ):
        self.device = device
        self.store = store
        self.user_id = user_id
        self.project_id = project_id if project_id is not None else settings.EXPO_PROJECT_ID

    async def register_token(self) -> Optional[TokenRegistration]:
        """Ask for permission and fetch the platform's delivery token.

        Returns:
            TokenRegistration, or None if the device is ineligible, permission
            was refused or no token could be obtained
        """
        if not self.device.is_physical_device:
            logger.info("Push tokens require a physical device")
            return None

        status = await self.device.get_permission_status()
        if status != PermissionStatus.GRANTED:
            status = await self.device.request_permission()
        if status != PermissionStatus.GRANTED:
            logger.info(f"Notification permission not granted ({status.value})")
            return None

        try:
            if self.device.platform == 'android':
                await self.device.ensure_channel(ANDROID_CHANNEL_ID, ANDROID_CHANNEL_NAME)
                token = await self.device.get_device_push_token()
                token_type = TokenType.FCM
            else:
                if not self.project_id:
                    logger.warning("No project id configured for push tokens")
                    return None
                token = await self.device.get_expo_push_token(self.project_id)
                token_type = TokenType.EXPO
        except DeviceError as e:
            logger.error(f"Error getting push token: {str(e)}")
            return None

        if not token:
            return None
        return TokenRegistration(token=token, token_type=token_type)

    async def save_token(self, token: str, token_type: TokenType) -> bool:
        """Upsert the token for (user, token) with device metadata.

        Returns:
            bool: True if saved, False if the write was skipped or failed
        """
        if not self.user_id:
            logger.warning("No authenticated user, cannot save push token")
            return False

        row = {
            'user_id': self.user_id,
            'token': token,
            'device_id': self.device.device_id,
            'platform': self.device.platform,
            'token_type': token_type.value,
            'updated_at': datetime.now(timezone.utc),
        }
        try:
            await self.store.upsert_push_token(row)
        except StoreError as e:
            logger.error(f"Error saving push token: {str(e)}")
            return False

        logger.info(f"Saved {token_type.value} push token for device {self.device.device_id}")
        return True

    async def initialize(self) -> Optional[TokenRegistration]:
        """Register the token and save it (best-effort)."""
        registration = await self.register_token()
        if registration is not None:
            await self.save_token(registration.token, registration.token_type)
        return registration

    async def remove_token(self, token: str) -> bool:
        """Delete this user's row for token (sign-out or token rotation).

        Returns:
            bool: True if removed, False if the delete was skipped or failed
        """
        if not self.user_id or not token:
            return False
        try:
            await self.store.delete_push_token(self.user_id, token)
        except StoreError as e:
            logger.error(f"Error removing push token: {str(e)}")
            return False

        logger.info(f"Removed push token for device {self.device.device_id}")
        return True
