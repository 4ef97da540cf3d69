# duochat wire constants (numeric envelope keys and event names)

PROTOCOL_VERSION = 1

# Envelope keys
K_V = 0
K_EVENT = 1
K_ID = 2
K_TS = 3
K_SRC = 4
K_BODY = 5

# Client -> hub events
EV_ADD_USER = "addUser"
EV_SEND_MESSAGE = "sendMessage"
EV_GET_CONVERSATIONS = "getConversations"
EV_GET_MESSAGES = "getMessages"
EV_PING = "ping"
EV_PONG = "pong"

# Hub -> client events
EV_GET_USERS = "getUsers"
EV_RECEIVE_MESSAGE = "receiveMessage"
EV_CONVERSATIONS = "conversations"
EV_MESSAGES = "messages"
EV_ERROR = "error"

CLIENT_EVENTS = frozenset(
    {
        EV_ADD_USER,
        EV_SEND_MESSAGE,
        EV_GET_CONVERSATIONS,
        EV_GET_MESSAGES,
        EV_PING,
        EV_PONG,
    }
)

# Payload field names. These are part of the wire format; do not rename.
F_USER_ID = "userId"
F_CONNECTION_ID = "connectionId"
F_SENDER_ID = "senderId"
F_RECEIVER_ID = "receiverId"
F_MESSAGE = "message"
F_CONVERSATION_ID = "conversationId"
F_SEQ = "seq"
F_TS = "ts"

USER_ID_MAX_CHARS = 64
