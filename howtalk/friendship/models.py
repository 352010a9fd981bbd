FRIENDSHIPS = "friendships"


friendships_sql = """
CREATE TYPE friendship_status AS ENUM ('pending', 'accepted', 'blocked');

CREATE TABLE friendships (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),

    requester_id UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,
    addressee_id UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,

    status friendship_status NOT NULL DEFAULT 'pending',

    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),

    -- Prevent A -> B from being stored twice
    CONSTRAINT unique_friend_pair UNIQUE (requester_id, addressee_id),

    -- Prevent a user from befriending themselves
    CONSTRAINT prevent_self_friendship CHECK (requester_id <> addressee_id)
);
"""
