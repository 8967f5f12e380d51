REDIS_PARTICIPANTS_KEY = "call:participants:{slug}" # project id - hash of user id -> participant json
REDIS_SIGNALS_KEY = "call:signals:{slug}" # project id - list of buffered signal json, oldest first
REDIS_CALL_CHANNEL = "video-call:{slug}" # project id - pub/sub channel for call signaling
REDIS_PROJECT_CHANNEL = "project:{slug}" # project id - pub/sub channel for project-wide notices
REDIS_MEMBERS_KEY = "project:members:{slug}" # project id - set of member user ids

# **Example participant json**
# - `user_id` = caller identity
# - `display_name` = name shown in the call grid
# - `peer_id` = transport peer id used to dial this participant
# - `joined_at` = epoch millis of first join, preserved on re-join
# - `last_seen_at` = epoch millis of the latest signal from this user
