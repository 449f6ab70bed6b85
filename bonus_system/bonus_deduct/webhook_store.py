"""
Зберігання посилання вхідного вебхука Bitrix24 в S3 (шифрування KMS на боці S3)
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings

logger = logging.getLogger(__name__)


class WebhookStore:
    """Посилання на вебхук як зашифрований JSON об'єкт у S3"""

    def __init__(self, settings: Settings, s3_client=None):
        self.s3_client = s3_client or boto3.client('s3')
        self.s3_bucket = settings.webhook_s3_bucket
        self.s3_key = settings.webhook_s3_key
        self.kms_key_id = settings.webhook_kms_key_id

    def save(self, webhook_url: str) -> Dict[str, Any]:
        """
        Збереження посилання; повертає {'success': bool, ...}
        """
        put_kwargs = {
            'Bucket': self.s3_bucket,
            'Key': self.s3_key,
            'Body': json.dumps({
                'webhook_url': webhook_url,
                'updated_at': datetime.now(timezone.utc).isoformat()
            }),
            'ContentType': 'application/json',
            'ServerSideEncryption': 'aws:kms'
        }
        if self.kms_key_id:
            put_kwargs['SSEKMSKeyId'] = self.kms_key_id

        try:
            self.s3_client.put_object(**put_kwargs)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"❌ Помилка збереження вебхука в s3://{self.s3_bucket}/{self.s3_key}: {e}")
            return {'success': False, 'error': f'Помилка S3: {e}'}

        logger.info(f"🔐 Посилання вебхука збережено в s3://{self.s3_bucket}/{self.s3_key}")
        return {'success': True}

    def load(self) -> Dict[str, Any]:
        """
        Посилання з S3; webhook_url = None, якщо сервіс ще не ініціалізовано
        """
        try:
            response = self.s3_client.get_object(Bucket=self.s3_bucket, Key=self.s3_key)
            data = json.loads(response['Body'].read().decode('utf-8'))
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in ('NoSuchKey', '404'):
                logger.warning(f"⚠️ Вебхук ще не збережено: s3://{self.s3_bucket}/{self.s3_key}")
                return {'success': True, 'webhook_url': None}
            logger.error(f"❌ Помилка читання вебхука з s3://{self.s3_bucket}/{self.s3_key}: {e}")
            return {'success': False, 'error': f'Помилка S3: {e}'}
        except (BotoCoreError, ValueError) as e:
            logger.error(f"❌ Помилка читання вебхука з s3://{self.s3_bucket}/{self.s3_key}: {e}")
            return {'success': False, 'error': f'Помилка S3: {e}'}

        webhook_url = data.get('webhook_url') if isinstance(data, dict) else None
        return {'success': True, 'webhook_url': webhook_url or None}
