PROFILES = "profiles"
CHAT_ROOMS = "chat_rooms"
CHAT_PARTICIPANTS = "chat_participants"
MESSAGES = "messages"


profiles_sql = """
CREATE TYPE profile_status AS ENUM ('online', 'offline', 'away');

CREATE TABLE profiles (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL UNIQUE REFERENCES auth.users(id) ON DELETE CASCADE,
    email TEXT,
    display_name TEXT,
    avatar_url TEXT,
    status profile_status DEFAULT 'offline',
    created_at TIMESTAMPTZ DEFAULT now(),
    updated_at TIMESTAMPTZ DEFAULT now()
);
"""

chat_rooms_sql = """
CREATE TABLE chat_rooms (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    name TEXT,
    is_group BOOLEAN NOT NULL DEFAULT FALSE,
    created_by UUID REFERENCES auth.users(id) ON DELETE SET NULL,
    created_at TIMESTAMPTZ DEFAULT now(),
    updated_at TIMESTAMPTZ DEFAULT now(),

    -- Group rooms are always named, 1:1 rooms take the counterpart's name
    CONSTRAINT group_rooms_named CHECK (NOT is_group OR name IS NOT NULL)
);
"""

chat_participants_sql = """
CREATE TABLE chat_participants (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    room_id UUID NOT NULL REFERENCES chat_rooms(id) ON DELETE CASCADE,
    user_id UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,
    joined_at TIMESTAMPTZ DEFAULT now(),
    UNIQUE (room_id, user_id)
);
"""

messages_sql = """
CREATE TYPE message_type AS ENUM ('text', 'image', 'file', 'ai');

CREATE TABLE messages (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    room_id UUID NOT NULL REFERENCES chat_rooms(id) ON DELETE CASCADE,
    sender_id UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    message_type message_type NOT NULL DEFAULT 'text',
    ai_persona TEXT,
    created_at TIMESTAMPTZ DEFAULT now(),
    updated_at TIMESTAMPTZ DEFAULT now()
);

-- Only current participants may post
CREATE POLICY messages_insert_participants ON messages FOR INSERT
    WITH CHECK (
        EXISTS (
            SELECT 1 FROM chat_participants cp
            WHERE cp.room_id = messages.room_id AND cp.user_id = auth.uid()
        )
    );

ALTER PUBLICATION supabase_realtime ADD TABLE messages;
"""
