PRESENCE_USER_KEY = "presence:user:{user_id}" # hash - connection id -> {gateway, last_seen}
PRESENCE_OWNER_KEY = "presence:owner" # hash - connection id -> user id
PRESENCE_HEARTBEATS_KEY = "presence:heartbeats" # sorted set - connection id scored by last heartbeat

ROOM_MEMBERS_KEY = "room:members:{room_id}" # hash - connection id -> user id
ROOM_USERS_KEY = "room:users:{room_id}" # set of user ids that joined and have not left
ROOM_CONN_KEY = "room:conn:{connection_id}" # set of room ids joined by a connection

QUEUE_SEQ_KEY = "queue:seq:{user_id}" # counter - enqueue sequence
QUEUE_INDEX_KEY = "queue:index:{user_id}" # sorted set - message id scored by sequence
QUEUE_ENTRIES_KEY = "queue:entries:{user_id}" # hash - message id -> queued delivery json
QUEUE_ATTEMPTS_KEY = "queue:attempts:{user_id}" # hash - message id -> delivery attempts

GATEWAY_CHANNEL = "gateway:channel:{instance_id}" # pub/sub channel for pushes owned by a gateway

# **Presence**
# - A user is online while `presence:user:{id}` exists. Redis removes a hash once its
#   last field is deleted, so deregistering the last connection takes the user offline.
# - The key also carries a TTL of heartbeat interval x miss limit, refreshed on every heartbeat.

# **Delivery queue**
# - Enqueue: WATCH seq, GET, then MULTI { SET seq, HSETNX entries, ZADD NX index }, so a
#   sequence is never visible before a lower one.
# - Drain reads the index by score after a cursor, so concurrent acks never shift positions.
# - Ack: MULTI { ZREM index, HDEL entries, HDEL attempts }.

# **Rooms**
# - `room:users:{id}` is the room's member list used for fan-out. A user stays a member
#   across disconnects so messages sent while they are offline are queued for them.
# - `room:members:{id}` tracks which live connections joined. Disconnect removes only the
#   connection; an explicit leave also drops the user once no other connection of theirs
#   remains joined.
