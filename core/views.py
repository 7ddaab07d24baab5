import time

from django.conf import settings
from django.db import DatabaseError, connection
from django.http import JsonResponse
from loguru import logger

from invoices.events import get_event_bus


def _check_database() -> dict:
    try:
        with connection.cursor() as cursor:
            cursor.execute('SELECT 1')
    except DatabaseError as exc:
        logger.error('health check: database unavailable: {}', exc)
        return {'ok': False, 'error': str(exc)}
    return {'ok': True}


def health(request):
    storage = _check_database()
    bus = {'ok': get_event_bus().ping()}
    environment = {
        'HELIUS_WEBHOOK_SECRET': bool(settings.HELIUS_WEBHOOK_SECRET),
        'SOLANA_RPC_URL': bool(settings.SOLANA_RPC_URL),
    }
    healthy = storage['ok'] and bus['ok'] and all(environment.values())
    return JsonResponse(
        {
            'status': 'healthy' if healthy else 'unhealthy',
            'timestamp': int(time.time()),
            'checks': {
                'storage': storage,
                'eventBus': bus,
                'environment': environment,
            },
        },
        status=200 if healthy else 503,
    )
