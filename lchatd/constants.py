# lchatd protocol constants (event field names, room naming, audit kinds)

# Every event record carries its kind under this key.
K_TYPE = "type"

# Rooms
DM_PREFIX = "DM:"
DEFAULT_FALLBACK_CHANNEL = "#general"
DEFAULT_CHANNELS = ("#general", "#dev-talk", "#random")
INVITE_CODE_BYTES = 4

# Commands embedded in message content start with this marker.
COMMAND_MARKER = "/"

# Author shown on hub-generated channel messages.
SYSTEM_AUTHOR = "Server"

# Presence statuses
STATUS_ONLINE = "online"
STATUS_AWAY = "away"
STATUS_DND = "dnd"
STATUSES = (STATUS_ONLINE, STATUS_AWAY, STATUS_DND)

# Audit entry kinds
AUDIT_USER_KICK = "USER_KICK"
AUDIT_USER_BAN = "USER_BAN"
AUDIT_MESSAGE_DELETE = "MESSAGE_DELETE"
AUDIT_CHANNEL_CREATE = "CHANNEL_CREATE"
AUDIT_CHANNEL_DELETE = "CHANNEL_DELETE"

# Length of the content preview kept in MESSAGE_DELETE audit details.
AUDIT_PREVIEW_CHARS = 50

# Close reasons handed to the transport
CLOSE_INVALID_AUTH = "Invalid Auth"
CLOSE_BANNED = "Banned"
CLOSE_DUPLICATE_LOGIN = "Duplicate Login"
CLOSE_KICKED = "kicked"
CLOSE_SHUTDOWN = "shutdown"
