"""Constants for Newsletter Sync."""

from datetime import timedelta
from pathlib import Path

# --- Config paths ---
CONFIG_DIR = Path.home() / ".newsletter-sync"
STORE_DB_PATH = CONFIG_DIR / "newsletters.db"
CACHE_DB_PATH = CONFIG_DIR / "cache.db"

# --- Providers ---
PROVIDER_GMAIL = "gmail"
PROVIDER_OUTLOOK = "outlook"
GMAIL_SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
# msal adds the reserved offline_access, openid and profile scopes itself
OUTLOOK_SCOPES = ["Mail.Read", "User.Read"]
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
MICROSOFT_LOGIN_URL = "https://login.microsoftonline.com"
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

BATCH_SIZE = 50  # messages per BatchHttpRequest
PAGE_SIZE = 100  # messages per list page
MAX_CANDIDATES = 500  # per account and sync run
PROVIDER_TIMEOUT_SECONDS = 30.0
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)

# Gmail searches unioned when no sender filter is given
GMAIL_SEARCH_QUERIES = [
    "category:promotions",
    "category:updates",
    "has:list-unsubscribe",
    "subject:(newsletter OR digest OR bulletin OR weekly OR edition OR issue)",
    "from:(newsletter OR digest OR noreply OR no-reply OR hello OR team OR news)",
    "from:(substack.com OR beehiiv.com OR mailchimp.com OR buttondown.email OR ghost.org)",
]

# --- Sync windows ---
INITIAL_SYNC_WINDOW = timedelta(days=30)
SYNC_OVERLAP = timedelta(hours=1)
DEFAULT_SYNC_FREQUENCY = 3600  # seconds
ARCHIVE_RETENTION = timedelta(days=15)

# --- Cache ---
CACHE_PREFIX = "newsletter:"
DEFAULT_CACHE_TTL = 3600
PROGRESS_CACHE_TTL = 600
PREVIEW_CACHE_TTL = 900

# --- Scoring weights ---
SCORING_RUBRIC_VERSION = "2"
WEIGHT_LIST_UNSUBSCRIBE = 30
WEIGHT_PRECEDENCE_BULK = 15
WEIGHT_LIST_HEADER = 10  # per extra list/campaign header
MAX_LIST_HEADERS = 30
WEIGHT_SENDER_PATTERN = 35
WEIGHT_AUTOMATED_SENDER = 10
WEIGHT_PLATFORM_DOMAIN = 40
WEIGHT_SUBJECT_PATTERN = 30
WEIGHT_BODY_PHRASES = 20
WEIGHT_STRUCTURE = 8  # per structural marker
MAX_STRUCTURE = 24
WEIGHT_HTML_HEAVY = 8
WEIGHT_TRACKING_PIXEL = 10
WEIGHT_IMAGE_HEAVY = 5
WEIGHT_LINK_DENSITY = 10
PENALTY_PERSONAL_DOMAIN = -30
PENALTY_SHORT_CONTENT = -20

# --- Scoring thresholds ---
SCORE_HIGH = 60
SCORE_MEDIUM = 40
LINK_DENSITY_THRESHOLD = 5
IMAGE_HEAVY_THRESHOLD = 5
SHORT_CONTENT_CHARS = 100

# --- Sender patterns (automated/newsletter addresses) ---
NEWSLETTER_SENDER_PREFIXES = [
    "newsletter@",
    "newsletters@",
    "news@",
    "digest@",
    "weekly@",
    "monthly@",
    "updates@",
    "hello@",
    "hi@",
    "team@",
    "community@",
    "editor@",
    "editors@",
]

AUTOMATED_SENDER_PATTERNS = [
    "noreply",
    "no-reply",
    "donotreply",
    "do-not-reply",
    "mailer",
    "notifications",
    "bounce",
]

NEWSLETTER_PLATFORM_DOMAINS = [
    "substack.com",
    "beehiiv.com",
    "beehiiv.net",
    "ghost.io",
    "ghost.org",
    "buttondown.email",
    "convertkit.com",
    "ck.page",
    "mailchimp.com",
    "mcsv.net",
    "list-manage.com",
    "mailerlite.com",
    "sendgrid.net",
    "mailgun.net",
    "amazonses.com",
    "constantcontact.com",
    "campaignmonitor.com",
    "klaviyo.com",
    "revue.email",
]

PERSONAL_DOMAINS = [
    "gmail.com",
    "googlemail.com",
    "outlook.com",
    "hotmail.com",
    "live.com",
    "yahoo.com",
    "icloud.com",
    "me.com",
    "aol.com",
    "protonmail.com",
]

LIST_HEADERS = [
    "list-id",
    "list-help",
    "list-archive",
    "list-subscribe",
    "list-post",
    "x-campaign-id",
    "x-mailchimp-campaign",
    "x-mailgun-tag",
    "feedback-id",
]

# --- Display ---
SAMPLE_SUBJECTS_LIMIT = 5
