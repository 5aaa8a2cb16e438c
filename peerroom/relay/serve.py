"""Relay serving.

The relay exposes a [`RoomStorage`][peerroom.relay.storage.RoomStorage]
as a small REST API:

| Route | Success | Failure |
| --- | --- | --- |
| `POST /rooms?app_id={ns}` | 201, `{"room": "{ns}-######"}` | 400, 500 |
| `POST /rooms/{room}/extend` | 204 | 400, 404 |
| `DELETE /rooms/{room}` | 204 | 400 |
| `GET /rooms/{room}/messages?since={id}` | 200, `{"messages": [...]}` | 400, 404 |
| `POST /rooms/{room}/messages` | 201 | 400, 404, 413 |

Every request must carry an `Origin` header matching one of the configured
origin patterns, otherwise it is rejected with 403 before any route runs.
"""
from __future__ import annotations

import asyncio
import fnmatch
import json
import logging
import os
import random
from typing import Iterable

import quart
import uvicorn
import uvloop
from quart import request
from quart import Response

from peerroom.relay.config import RelayConfig
from peerroom.relay.constants import DEFAULT_ALLOWED_ORIGINS
from peerroom.relay.constants import MESSAGE_MAX_SIZE
from peerroom.relay.constants import VACUUM_PROBABILITY
from peerroom.relay.exceptions import RoomExhaustedError
from peerroom.relay.exceptions import RoomNotFoundError
from peerroom.relay.models import validate_app_id
from peerroom.relay.models import validate_room_id
from peerroom.relay.storage import RoomStorage
from peerroom.relay.storage import SQLiteRoomStorage

logger = logging.getLogger(__name__)

routes_blueprint = quart.Blueprint('routes', __name__)

_CORS_HEADERS = {
    'Access-Control-Allow-Methods': 'GET, POST, DELETE, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type',
    'Access-Control-Max-Age': '600',
}


def create_app(
    storage: RoomStorage,
    *,
    allowed_origins: Iterable[str] = DEFAULT_ALLOWED_ORIGINS,
    max_message_size: int = MESSAGE_MAX_SIZE,
    vacuum_probability: float = VACUUM_PROBABILITY,
) -> quart.Quart:
    """Create quart app for the relay and register routes.

    Args:
        storage: Initialized storage the routes operate on.
        allowed_origins: Shell-style patterns (e.g.,
            `#!python 'https://*.example.com'`) of accepted origins.
        max_message_size: Max size in bytes of a posted message body.
        vacuum_probability: Probability that a room creation request also
            purges expired rooms.

    Returns:
        Quart app.
    """
    app = quart.Quart(__name__)

    app.config['storage'] = storage
    app.config['allowed_origins'] = tuple(allowed_origins)
    app.config['max_message_size'] = max_message_size
    app.config['vacuum_probability'] = vacuum_probability

    app.register_blueprint(routes_blueprint, url_prefix='')

    return app


def is_allowed_origin(origin: str | None, patterns: Iterable[str]) -> bool:
    """Check if an origin matches any of the allowed origin patterns."""
    if origin is None:
        return False
    return any(fnmatch.fnmatchcase(origin, pattern) for pattern in patterns)


async def _serve_async(config: RelayConfig) -> None:
    if config.database_path is not None:
        logger.info(
            f'Using SQLite database for rooms (path: {config.database_path})',
        )
        storage = SQLiteRoomStorage(
            config.database_path,
            ttl_ms=config.room_ttl_ms,
        )
    else:
        logger.warning(
            'Database path not provided. Rooms will not be persisted',
        )
        storage = SQLiteRoomStorage(ttl_ms=config.room_ttl_ms)

    app = create_app(
        storage,
        allowed_origins=config.allowed_origins,
        max_message_size=config.max_message_size,
    )

    server_config = uvicorn.Config(
        app,
        host=config.host,
        port=config.port,
        log_config=None,
        log_level=logger.level,
        access_log=False,
    )
    server = uvicorn.Server(server_config)

    logger.info(f'Serving relay on {config.host}:{config.port}')
    logger.info(f'Config: {config}')

    await server.serve()


def serve(config: RelayConfig, *, use_uvloop: bool = True) -> None:
    """Initialize storage and serve the relay app.

    Warning:
        This function does not return until the app is terminated.

    Args:
        config: Configuration object.
        use_uvloop: Install uvloop as the default event loop implementation.
    """
    log_file = config.logging.log_file
    if log_file is not None:
        parent_dir = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(parent_dir, exist_ok=True)
        logging.getLogger().handlers.append(logging.FileHandler(log_file))

    for handler in logging.getLogger().handlers:
        handler.setFormatter(
            logging.Formatter(
                '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
                '%(message)s',
                datefmt='%Y-%m-%d %H:%M:%S',
            ),
        )
    logging.getLogger().setLevel(config.logging.default_level)

    if use_uvloop:  # pragma: no cover
        logger.info('Installing uvloop as default event loop')
        uvloop.install()
    else:
        logger.warning(
            'Not installing uvloop. Uvicorn may override and install anyways',
        )

    try:
        asyncio.run(_serve_async(config))
    except Exception as e:
        logger.exception(f'Caught unhandled exception: {e!r}')
        raise
    finally:
        logger.info('Finished serving relay')


@routes_blueprint.after_app_serving
async def _shutdown() -> None:
    storage = quart.current_app.config['storage']
    await storage.close()


@routes_blueprint.before_app_request
async def _check_origin() -> Response | None:
    origin = request.headers.get('Origin', None)
    patterns = quart.current_app.config['allowed_origins']
    if not is_allowed_origin(origin, patterns):
        logger.warning(
            f'Rejected {request.method} {request.path} from origin {origin}',
        )
        return Response('Forbidden', 403)
    if request.method == 'OPTIONS':
        return Response('', 204)
    return None


@routes_blueprint.after_app_request
async def _add_cors_headers(response: Response) -> Response:
    origin = request.headers.get('Origin', None)
    patterns = quart.current_app.config['allowed_origins']
    if is_allowed_origin(origin, patterns):
        assert origin is not None
        response.headers['Access-Control-Allow-Origin'] = origin
        response.headers['Vary'] = 'Origin'
        response.headers.update(_CORS_HEADERS)
    return response


async def _vacuum(storage: RoomStorage) -> None:
    purged = await storage.vacuum()
    logger.info(f'Purged {purged} expired room(s)')


@routes_blueprint.route('/rooms', methods=['POST'])
async def create_room_handler() -> Response:
    """Route handler for `POST /rooms`.

    Responses:

    * `Status Code 201`: JSON containing the key `room` with the full
      identifier of the new room.
    * `Status Code 400`: If the `app_id` argument is missing or invalid.
    * `Status Code 500`: If no unused room code could be found.
    """
    app_id = request.args.get('app_id', None)
    if app_id is None or not validate_app_id(app_id):
        return Response(f'invalid app_id: {app_id}', 400)

    config = quart.current_app.config
    storage = config['storage']
    if random.random() < config['vacuum_probability']:
        quart.current_app.add_background_task(_vacuum, storage)

    try:
        room = await storage.create_room(app_id)
    except RoomExhaustedError as e:
        logger.error(str(e))
        return Response('Failed to create a new room', 500)

    logger.info(f'Created room {room}')
    return Response(
        json.dumps({'room': room}),
        201,
        content_type='application/json',
    )


@routes_blueprint.route('/rooms/<room>/extend', methods=['POST'])
async def extend_room_handler(room: str) -> Response:
    """Route handler for `POST /rooms/<room>/extend`.

    Responses:

    * `Status Code 204`: If the room expiry was extended.
    * `Status Code 400`: If the room identifier is invalid.
    * `Status Code 404`: If the room does not exist or has expired.
    """
    if not validate_room_id(room):
        return Response(f'invalid room: {room}', 400)

    storage = quart.current_app.config['storage']
    try:
        await storage.extend_room(room)
    except RoomNotFoundError:
        return Response('Room not found', 404)
    logger.debug(f'Extended room {room}')
    return Response('', 204)


@routes_blueprint.route('/rooms/<room>', methods=['DELETE'])
async def delete_room_handler(room: str) -> Response:
    """Route handler for `DELETE /rooms/<room>`.

    Responses:

    * `Status Code 204`: Always, whether or not the room existed.
    * `Status Code 400`: If the room identifier is invalid.
    """
    if not validate_room_id(room):
        return Response(f'invalid room: {room}', 400)

    storage = quart.current_app.config['storage']
    await storage.delete_room(room)
    logger.info(f'Deleted room {room}')
    return Response('', 204)


@routes_blueprint.route('/rooms/<room>/messages', methods=['GET'])
async def list_messages_handler(room: str) -> Response:
    """Route handler for `GET /rooms/<room>/messages`.

    Responses:

    * `Status Code 200`: JSON containing the key `messages` with the list
      of `{"id": int, "body": str}` objects newer than `since` in
      ascending order.
    * `Status Code 400`: If the room identifier is invalid or `since` is
      not an integer greater than or equal to -1.
    * `Status Code 404`: If the room does not exist or has expired.
    """
    if not validate_room_id(room):
        return Response(f'invalid room: {room}', 400)

    since_arg = request.args.get('since', None)
    try:
        since = -1 if since_arg is None else int(since_arg)
    except ValueError:
        return Response(f'invalid since: {since_arg}', 400)
    if since < -1:
        return Response(f'invalid since: {since_arg}', 400)

    storage = quart.current_app.config['storage']
    try:
        messages = await storage.list_messages(room, since)
    except RoomNotFoundError:
        return Response('Room not found', 404)

    return Response(
        json.dumps(
            {'messages': [{'id': m.id, 'body': m.body} for m in messages]},
        ),
        200,
        content_type='application/json',
    )


@routes_blueprint.route('/rooms/<room>/messages', methods=['POST'])
async def post_message_handler(room: str) -> Response:
    """Route handler for `POST /rooms/<room>/messages`.

    The raw request body is stored as the message body.

    Responses:

    * `Status Code 201`: If the message was appended.
    * `Status Code 400`: If the room identifier is invalid or the body is
      not UTF-8 text.
    * `Status Code 404`: If the room does not exist or has expired.
    * `Status Code 413`: If the body exceeds the maximum message size.
    """
    if not validate_room_id(room):
        return Response(f'invalid room: {room}', 400)

    max_size = quart.current_app.config['max_message_size']
    data = bytearray()
    async for chunk in request.body:
        data += chunk
        if len(data) > max_size:
            return Response('message too large', 413)

    try:
        body = data.decode('utf-8')
    except UnicodeDecodeError:
        return Response('message body must be UTF-8 text', 400)

    storage = quart.current_app.config['storage']
    try:
        message_id = await storage.append_message(room, body)
    except RoomNotFoundError:
        return Response('Room not found', 404)

    logger.debug(f'Appended message {message_id} to room {room}')
    return Response('', 201)
