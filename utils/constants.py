"""
utils/constants.py

Purpose: Centralized static content

- All user-facing messages (plain text, Telegram renders them verbatim)
- Operator alert templates
- Command names

(Prevents hardcoding across the codebase)
"""

# ============================================================
# COMMANDS
# ============================================================

COMMAND_START = "start"
COMMAND_CANCEL = "cancel"
COMMAND_PAY = "pay"
COMMAND_HELP = "help"

# ============================================================
# WELCOME & ONBOARDING
# ============================================================

WELCOME_MESSAGE = """👋 Welcome!

Our content is exclusive to subscribers. Subscribing takes three quick answers and a payment:
1️⃣ Your name
2️⃣ Your email
3️⃣ Your phone number

Type /cancel at any time to stop."""

ALREADY_SUBSCRIBED_MESSAGE = "✅ You are an active subscriber! Access granted."

HELP_MESSAGE = """ℹ️ Available commands:

/start - subscribe
/pay - get a new payment link
/cancel - stop the current registration"""

# ============================================================
# INTAKE FORM
# ============================================================

ASK_NAME_MESSAGE = "📍 Step 1 of 3\n\nWhat is your full name?"

ASK_EMAIL_MESSAGE = "📍 Step 2 of 3\n\nThanks, {name}! What is your email address?"

ASK_PHONE_MESSAGE = "📍 Step 3 of 3\n\nWhat is your phone number? Include the country code, e.g. +55 11 91234-5678"

INVALID_NAME_MESSAGE = "❌ Please send your name as text."

INVALID_EMAIL_MESSAGE = """❌ That doesn't look like a valid email address.

Example: ana.silva@example.com

Please try again."""

INVALID_PHONE_MESSAGE = """❌ That doesn't look like a valid phone number.

Send 10 to 15 digits, optionally starting with +.
Example: +55 11 91234-5678

Please try again."""

FORM_COMPLETED_MESSAGE = """✅ Registration complete!

Name: {name}
Email: {email}
Phone: {phone}"""

FORM_SAVE_FAILED_MESSAGE = "⚠️ We couldn't save your details right now. Please send your phone number again."

COMMAND_IGNORED_MESSAGE = "⌛ Please answer the question above first, or type /cancel to stop."

# ============================================================
# SESSION LIFECYCLE
# ============================================================

SESSION_CONFLICT_MESSAGE = "⚠️ You already have a registration in progress. Answer the last question, or type /cancel to start over."

SESSION_EXPIRED_MESSAGE = "⌛ Your registration timed out. Type /start to begin again."

SESSION_CANCELLED_MESSAGE = "🛑 Registration cancelled. Type /start whenever you want to begin again."

NO_ACTIVE_SESSION_MESSAGE = "Type /start to subscribe."

NOTHING_TO_CANCEL_MESSAGE = "There is no registration in progress."

# ============================================================
# PAYMENT
# ============================================================

PAYMENT_LINK_MESSAGE = """🔒 Exclusive content for subscribers!

To get access, subscribe here:
{link}

Your access will be granted automatically after payment."""

PAYMENT_LINK_FAILED_MESSAGE = "⚠️ We couldn't create your payment link right now. Please type /pay in a few minutes."

PAY_WITHOUT_FORM_MESSAGE = "Please type /start and complete the registration first."

PAYMENT_APPROVED_MESSAGE = "🎉 Payment approved! Your access has been granted."

PAYMENT_APPROVED_INVITE_MESSAGE = """🎉 Payment approved!

We couldn't add you to the group directly, so here is your personal invite link (single use, valid for {hours} hours):
{link}"""

PAYMENT_APPROVED_PENDING_ACCESS_MESSAGE = "🎉 Payment approved! We're finishing setting up your access and will message you shortly."

# ============================================================
# ERRORS
# ============================================================

GENERIC_ERROR_MESSAGE = "⚠️ Something went wrong. Please try again later."

# ============================================================
# OPERATOR ALERTS
# ============================================================

OPERATOR_PROVISION_FAILED_ALERT = """🚨 Provisioning failed
payment: {payment_id}
user: {user_id}
error: {error}"""

OPERATOR_INVALID_PAYMENT_ALERT = """🚨 Approved payment rejected
payment: {payment_id}
reason: {reason}"""

OPERATOR_NOTIFICATION_FAILED_ALERT = """⚠️ Approval notification not delivered
payment: {payment_id}
user: {user_id}
error: {error}"""
