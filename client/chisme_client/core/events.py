# Wire tags for the duplex protocol. One JSON object per frame, discriminated
# by its "type" field.

# ── Client → server ─────────────────────────────────────────────────────────
JOIN_CHANNEL = "join_channel"
LEAVE_CHANNEL = "leave_channel"
SEND_MESSAGE = "send_message"
EDIT_MESSAGE = "edit_message"
DELETE_MESSAGE = "delete_message"
TYPING_START = "typing_start"
JOIN_VOICE = "join_voice"
LEAVE_VOICE = "leave_voice"
TIMEOUT_USER = "timeout_user"
PING = "ping"

# ── Server → client ─────────────────────────────────────────────────────────
IDENTITY = "identity"
NEW_MESSAGE = "new_message"
MESSAGE_EDITED = "message_edited"
MESSAGE_DELETED = "message_deleted"
MESSAGE_PINNED = "message_pinned"
REACTION_ADD = "reaction_add"
REACTION_REMOVE = "reaction_remove"
USER_JOINED = "user_joined"
USER_LEFT = "user_left"
USER_TIMEDOUT = "user_timedout"
ERROR = "error"
PONG = "pong"

# ── Voice (both directions) ─────────────────────────────────────────────────
VOICE_PEER_JOINED = "voice_peer_joined"
VOICE_PEER_LEFT = "voice_peer_left"
VOICE_MEMBERS = "voice_members"
VOICE_STATE_SYNC = "voice_state_sync"
VOICE_STATUS_UPDATE = "voice_status_update"
VOICE_TALKING = "voice_talking"

# WebRTC signaling, relayed opaquely, never inspected
VOICE_OFFER = "voice_offer"
VOICE_ANSWER = "voice_answer"
ICE_CANDIDATE = "ice_candidate"

SIGNAL_TYPES = frozenset({VOICE_OFFER, VOICE_ANSWER, ICE_CANDIDATE})

# ── Local only: never sent or received on the wire ─────────────────────────
# Fed to EventDispatcher.apply_inbound so every store write has one path.
HISTORY_PAGE = "history_page"
CONNECTION_LOST = "connection_lost"
