from environs import Env
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

env = Env()
env.read_env(BASE_DIR / '.env')

APP_ENV = env.str('APP_ENV', 'local')

SECRET_KEY = env.str('APP_SECRET_KEY', 'change-me')

DEBUG = APP_ENV != 'production'

ALLOWED_HOSTS = env.list('ALLOWED_HOSTS', default=['*'])

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'invoices',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'core.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

# Live status streams need an event loop per worker, so the service runs under ASGI.
ASGI_APPLICATION = 'core.asgi.application'


DATABASES = {
    'default': {
        'ENGINE': env.str('DATABASE_ENGINE', 'django.db.backends.postgresql'),
        'NAME': env.str(
            'PGSQL_DATABASE_INVOICES',
            env.str('PGSQL_DATABASE', 'solpay_invoices'),
        ),
        'USER': env.str('PGSQL_USER', 'postgres'),
        'PASSWORD': env.str('PGSQL_PASSWORD', 'mysecretpassword'),
        'HOST': env.str('PGSQL_HOST', 'localhost'),
        'PORT': env.int('PGSQL_PORT', 5432),
    }
}


AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator',
    },
]


LANGUAGE_CODE = 'en-us'

TIME_ZONE = 'UTC'

USE_I18N = True

USE_TZ = True


STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'static'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
    'UNAUTHENTICATED_USER': None,
}

# Invoice lifecycle
INVOICE_TTL_SECONDS = env.int('INVOICE_TTL_SECONDS', 600)
INVOICE_EXTENSION_SECONDS = env.int('INVOICE_EXTENSION_SECONDS', 120)
INVOICE_STREAM_CEILING_SECONDS = env.int('INVOICE_STREAM_CEILING_SECONDS', 15 * 60)
INVOICE_VERIFY_DEADLINE_SECONDS = env.float('INVOICE_VERIFY_DEADLINE_SECONDS', 8.0)
INVOICE_VERIFY_MAX_ATTEMPTS = env.int('INVOICE_VERIFY_MAX_ATTEMPTS', 3)
INVOICE_AMOUNT_TOLERANCE = env.decimal('INVOICE_AMOUNT_TOLERANCE', '0.000001')
INVOICE_SIGNATURE_SCAN_LIMIT = env.int('INVOICE_SIGNATURE_SCAN_LIMIT', 25)
INVOICE_MERCHANT_LABEL = env.str('INVOICE_MERCHANT_LABEL', 'Wino Business')

# Chain access
SOLANA_NETWORK = env.str('SOLANA_NETWORK', 'solana')
SOLANA_RPC_URL = env.str('SOLANA_RPC_URL', '')
SOLANA_SPL_TOKEN_MINT = env.str('SOLANA_SPL_TOKEN_MINT', '')

# Webhook provider
HELIUS_WEBHOOK_SECRET = env.str('HELIUS_WEBHOOK_SECRET', '')

# Empty means the in-process bus; set a redis:// URL to fan out across workers.
INVOICE_EVENT_BUS_URL = env.str('REDIS_URL', '')

DEBUG_ENDPOINTS_ENABLED = env.bool('DEBUG_ENDPOINTS_ENABLED', DEBUG)
