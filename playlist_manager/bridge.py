"""
Request/response and event messaging between a front end and the backend.

Requests are dicts of the form `{"id": ..., "command": ..., "params": {...}}`.
Every request gets exactly one response with the same id, either
`{"id", "ok": true, "result": ...}` or `{"id", "ok": false, "error": {"type", "message"}}`.
Queue events are pushed to every subscriber as `{"event": ..., ...}` dicts.
`serve_stdio` carries both as newline-delimited JSON.
"""
import sys
import json
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TextIO

from pydantic import ValidationError

from .controller import AppController
from .exceptions import PlaylistManagerError
from .queue_manager import QueueEvent

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


def _to_jsonable(value: Any) -> Any:
    if hasattr(value, 'to_dict'):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {key: _to_jsonable(item) for key, item in value.items()}
    return value


class MessageBridge:
    """Dispatches requests to the controller and fans queue events out to subscribers."""

    def __init__(self, controller: AppController):
        self.controller = controller
        self.logger = logging.getLogger(__name__)
        self._subscribers: List[asyncio.Queue] = []
        self._handlers: Dict[str, Handler] = {
            'enqueue': self._handle_enqueue,
            'pause': self._handle_pause,
            'resume': self._handle_resume,
            'cancel': self._handle_cancel,
            'get_queue_status': self._handle_get_queue_status,
            'get_job': self._handle_get_job,
            'list_jobs': self._handle_list_jobs,
            'clear_finished': self._handle_clear_finished,
            'import_playlist': self._handle_import_playlist,
            'list_playlists': self._handle_list_playlists,
            'get_playlist_videos': self._handle_get_playlist_videos,
            'delete_playlist': self._handle_delete_playlist,
            'download_playlist': self._handle_download_playlist,
            'get_video_info': self._handle_get_video_info,
            'get_formats': self._handle_get_formats,
            'scan_duplicates': self._handle_scan_duplicates,
            'get_duplicates': self._handle_get_duplicates,
            'resolve_duplicate': self._handle_resolve_duplicate,
            'check_before_download': self._handle_check_before_download,
            'export_playlists': self._handle_export_playlists,
            'export_backup': self._handle_export_backup,
            'import_backup': self._handle_import_backup,
            'list_presets': self._handle_list_presets,
            'get_versions': self._handle_get_versions,
            'install_dependency': self._handle_install_dependency,
            'skip_update': self._handle_skip_update,
            'get_settings': self._handle_get_settings,
            'update_settings': self._handle_update_settings,
        }
        controller.queue.add_listener(self._on_queue_event)

    # --- Events ---

    def subscribe(self) -> asyncio.Queue:
        """Returns a queue that receives every subsequent event dict."""
        subscriber: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: asyncio.Queue):
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def _on_queue_event(self, event: QueueEvent):
        message = event.to_dict()
        for subscriber in list(self._subscribers):
            subscriber.put_nowait(message)

    # --- Requests ---

    async def handle_request(self, request: Any) -> Dict[str, Any]:
        """Runs one request and returns its response. Never raises."""
        request_id = request.get('id') if isinstance(request, dict) else None
        if not isinstance(request, dict) or not isinstance(request.get('command'), str):
            return self._error(request_id, 'InvalidRequest', "Request must be an object with a 'command' string.")

        command = request['command']
        params = request.get('params') or {}
        handler = self._handlers.get(command)
        if handler is None:
            return self._error(request_id, 'UnknownCommand', f"Unknown command '{command}'.")
        if not isinstance(params, dict):
            return self._error(request_id, 'InvalidRequest', "'params' must be an object.")

        try:
            result = await handler(params)
        except PlaylistManagerError as e:
            return self._error(request_id, type(e).__name__, str(e))
        except ValidationError as e:
            details = e.errors()[0]
            field = details['loc'][0] if details['loc'] else 'settings'
            return self._error(request_id, 'InvalidSettings', f"Error in field '{field}': {details['msg']}")
        except KeyError as e:
            return self._error(request_id, 'InvalidRequest', f"Missing parameter {e}.")
        except (TypeError, ValueError) as e:
            return self._error(request_id, 'InvalidRequest', str(e))
        except Exception as e:
            self.logger.exception(f"Unexpected error while handling '{command}'")
            return self._error(request_id, 'InternalError', str(e))
        return {'id': request_id, 'ok': True, 'result': _to_jsonable(result)}

    @staticmethod
    def _error(request_id: Any, error_type: str, message: str) -> Dict[str, Any]:
        return {'id': request_id, 'ok': False, 'error': {'type': error_type, 'message': message}}

    async def _handle_enqueue(self, params):
        return {'job_id': await self.controller.enqueue(params.get('spec', params))}

    async def _handle_pause(self, params):
        await self.controller.queue.pause(params['job_id'])
        return self.controller.queue.get_job(params['job_id'])

    async def _handle_resume(self, params):
        await self.controller.queue.resume(params['job_id'])
        return self.controller.queue.get_job(params['job_id'])

    async def _handle_cancel(self, params):
        await self.controller.queue.cancel(params['job_id'])
        return self.controller.queue.get_job(params['job_id'])

    async def _handle_get_queue_status(self, params):
        return self.controller.queue.get_queue_status()

    async def _handle_get_job(self, params):
        return self.controller.queue.get_job(params['job_id'])

    async def _handle_list_jobs(self, params):
        return self.controller.queue.list_jobs()

    async def _handle_clear_finished(self, params):
        return {'cleared': await self.controller.queue.clear_finished()}

    async def _handle_import_playlist(self, params):
        return await self.controller.import_playlist(params['url'])

    async def _handle_list_playlists(self, params):
        return await self.controller.list_playlists()

    async def _handle_get_playlist_videos(self, params):
        return await self.controller.get_playlist_videos(int(params['playlist_id']))

    async def _handle_delete_playlist(self, params):
        return {'deleted': await self.controller.delete_playlist(int(params['playlist_id']))}

    async def _handle_download_playlist(self, params):
        job_ids = await self.controller.download_playlist(
            int(params['playlist_id']),
            options=params.get('options'),
            include_downloaded=bool(params.get('include_downloaded', False)),
        )
        return {'job_ids': job_ids}

    async def _handle_get_video_info(self, params):
        return await self.controller.get_video_info(params['url'])

    async def _handle_get_formats(self, params):
        return await self.controller.get_formats(params['url'])

    async def _handle_scan_duplicates(self, params):
        return await self.controller.scan_duplicates(
            title_threshold=params.get('title_threshold'),
            check_file_hashes=params.get('check_file_hashes'),
        )

    async def _handle_get_duplicates(self, params):
        return await self.controller.get_duplicates(bool(params.get('include_ignored', False)))

    async def _handle_resolve_duplicate(self, params):
        updated = await self.controller.resolve_duplicate(
            int(params['original_video_id']), int(params['duplicate_video_id']), params['action'])
        return {'updated': updated}

    async def _handle_check_before_download(self, params):
        return await self.controller.detector.check_before_download(params['url'], params.get('title'))

    async def _handle_export_playlists(self, params):
        playlist_ids = params['playlist_ids']
        if not isinstance(playlist_ids, list):
            playlist_ids = [playlist_ids]
        return await self.controller.export_playlists(
            [int(playlist_id) for playlist_id in playlist_ids], params['path'], params.get('format', 'json'))

    async def _handle_export_backup(self, params):
        return await self.controller.export_backup(params['path'])

    async def _handle_import_backup(self, params):
        return await self.controller.import_backup(params['path'], preview=bool(params.get('preview', False)))

    async def _handle_list_presets(self, params):
        return self.controller.list_presets()

    async def _handle_get_versions(self, params):
        return await self.controller.get_versions()

    async def _handle_install_dependency(self, params):
        return await self.controller.install_dependency(params['tool'])

    async def _handle_skip_update(self, params):
        self.controller.skip_update_version(params['version'])
        return {'skipped': params['version']}

    async def _handle_get_settings(self, params):
        return json.loads(self.controller.config.model_dump_json())

    async def _handle_update_settings(self, params):
        settings = await self.controller.apply_settings(params)
        return json.loads(settings.model_dump_json())

    # --- NDJSON transport ---

    async def serve_stdio(self, reader: Optional[TextIO] = None, writer: Optional[TextIO] = None):
        """
        Serves requests read line by line from `reader` (stdin by default) and
        writes responses and events to `writer` (stdout by default) until EOF.
        """
        reader = reader or sys.stdin
        writer = writer or sys.stdout
        write_lock = asyncio.Lock()

        async def write_message(message: Dict[str, Any]):
            line = json.dumps(message, default=str)
            async with write_lock:
                writer.write(line + '\n')
                writer.flush()

        async def forward_events(subscriber: asyncio.Queue):
            while True:
                await write_message(await subscriber.get())

        async def answer(raw_line: str):
            try:
                request = json.loads(raw_line)
            except json.JSONDecodeError as e:
                response = self._error(None, 'InvalidRequest', f"Malformed JSON: {e}")
            else:
                response = await self.handle_request(request)
            await write_message(response)

        subscriber = self.subscribe()
        forwarder = asyncio.create_task(forward_events(subscriber), name="bridge-event-forwarder")
        pending = set()
        self.logger.info("Message bridge listening on stdio.")
        try:
            while True:
                raw_line = await asyncio.to_thread(reader.readline)
                if not raw_line:
                    break
                if not raw_line.strip():
                    continue
                # Requests are answered concurrently and may complete out of order.
                task = asyncio.create_task(answer(raw_line))
                pending.add(task)
                task.add_done_callback(pending.discard)
            if pending:
                await asyncio.gather(*pending)
        finally:
            self.unsubscribe(subscriber)
            forwarder.cancel()
            await asyncio.gather(forwarder, return_exceptions=True)
            while not subscriber.empty():
                await write_message(subscriber.get_nowait())
        self.logger.info("Message bridge input closed.")
