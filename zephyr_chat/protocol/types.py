from enum import Enum, IntEnum

class ChatType(IntEnum):
    PRIVATE = 0x01  # Личный чат (E2EE)
    GROUP   = 0x02  # Группа (без E2EE)

class ServerEvent(str, Enum):
    NEW_MESSAGE       = "newMessage"
    NEW_GROUP_MESSAGE = "newGroupMessage"
    MESSAGE_UPDATED   = "messageUpdated"
    MESSAGE_DELETED   = "messageDeleted"
    ONLINE_USERS      = "getOnlineUsers"
    USER_TYPING       = "userTyping"
    USER_STOP_TYPING  = "userStopTyping"
    RESPONSE          = "response"  # Ответ на запрос с id
    ERROR             = "error"

class ClientEvent(str, Enum):
    START_TYPING       = "startTyping"
    STOP_TYPING        = "stopTyping"
    SEND_MESSAGE       = "sendMessage"
    SEND_GROUP_MESSAGE = "sendGroupMessage"
    EDIT_MESSAGE       = "editMessage"
    DELETE_MESSAGE     = "deleteMessage"
    GET_MESSAGES       = "getMessages"
    GET_GROUP_MESSAGES = "getGroupMessages"
    GET_PUBLIC_KEY     = "getPublicKey"
    GET_PRIVATE_KEY    = "getPrivateKey"  # Только свой ключ
    CREATE_GROUP       = "createGroup"
    ADD_MEMBERS        = "addMembers"

class ConnectionState(str, Enum):
    CONNECTING   = "connecting"
    CONNECTED    = "connected"
    DISCONNECTED = "disconnected"  # Конечное состояние
