REDIS_USER_KEY = "user:{user_id}" # user id - profile hash
REDIS_USERNAME_KEY = "user:name:{username}" # lowercased username -> user id
REDIS_BLOCKED_KEY = "user:blocked:{user_id}" # blocker id - set of blocked user ids
REDIS_DM_PEERS_KEY = "user:dm_peers:{user_id}" # user id - set of DM counterparts

REDIS_META_KEY = "room:meta:{slug}" # room id
REDIS_ROOM_NAME_KEY = "room:name:{name}" # room name -> room id
REDIS_ROOMS_INDEX = "rooms:index" # sorted set of room ids scored by creation time
REDIS_ROOM_MESSAGES_KEY = "room:messages:{slug}" # room id - sorted set of message JSON scored by time

REDIS_DM_KEY = "dm:{message_id}" # direct message hash
REDIS_DM_CONVERSATION_KEY = "dm:conversation:{low}:{high}" # sorted pair of user ids - sorted set of DM ids

# Pub/sub channels
CHANNEL_ROOM_MESSAGE = "room:message" # routing key: room id
CHANNEL_USER_JOINED = "user:joined" # routing key: room id
CHANNEL_USER_LEFT = "user:left" # routing key: room id
CHANNEL_DIRECT_MESSAGE = "dm:message" # routing key: receiver id

RELAY_CHANNELS = (
    CHANNEL_ROOM_MESSAGE,
    CHANNEL_USER_JOINED,
    CHANNEL_USER_LEFT,
    CHANNEL_DIRECT_MESSAGE,
)
ROOM_CHANNELS = (CHANNEL_ROOM_MESSAGE, CHANNEL_USER_JOINED, CHANNEL_USER_LEFT)
