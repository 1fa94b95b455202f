# Relay protocol constants (numeric keys and frame types)

RELAY_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_BODY = 6

# Client -> hub
T_JOIN_ROOM = 10
T_LEAVE_ROOM = 11
T_SEND_MESSAGE = 20
T_TYPING_START = 30
T_TYPING_STOP = 31

# Hub -> client
T_ROOM_HISTORY = 12
T_ROOM_USERS = 13
T_USER_JOINED = 14
T_USER_LEFT = 15
T_NEW_MESSAGE = 21
T_USER_TYPING = 32
T_USER_STOPPED_TYPING = 33

T_ERROR = 40

FRAME_NAMES = {
    T_JOIN_ROOM: "join-room",
    T_LEAVE_ROOM: "leave-room",
    T_SEND_MESSAGE: "send-message",
    T_TYPING_START: "typing-start",
    T_TYPING_STOP: "typing-stop",
    T_ROOM_HISTORY: "room-history",
    T_ROOM_USERS: "room-users",
    T_USER_JOINED: "user-joined",
    T_USER_LEFT: "user-left",
    T_NEW_MESSAGE: "new-message",
    T_USER_TYPING: "user-typing",
    T_USER_STOPPED_TYPING: "user-stopped-typing",
    T_ERROR: "error",
}

# Error frame kinds
ERR_UNAUTHORIZED = "unauthorized"
ERR_INVALID = "invalid"
ERR_MALFORMED = "malformed"
ERR_RATE_LIMITED = "rate-limited"

# Direct-link JSON frames
DIRECT_VERSION = 1
F_MESSAGE = "message"
F_USER_JOINED = "user-joined"
F_USER_PRESENT = "user-present"
F_USER_LEFT = "user-left"

# Reticulum destination names
RELAY_DEST_NAME = "roomlink.relay"
DIRECT_DEST_NAME = "roomlink.direct"

# Limits
NICK_MAX_CHARS = 32
ROOM_CODE_MAX_CHARS = 32
ROOM_CODE_GEN_LEN = 6
MAX_STORED_MESSAGES = 1000
MAX_ROOM_HISTORY = 1000
MAX_MESSAGE_CHARS = 2000
TYPING_TIMEOUT_S = 1.0
LAN_PORT = 54546
LAN_MAX_DATAGRAM = 65507
