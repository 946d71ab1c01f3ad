import minepeek

# Below is an example using query_status().
# If the server can't be queried, a MinePeekError subclass is raised.
endpoint = minepeek.lookup_endpoint('minecraft.frag.land')
print('Minecraft server status of %s on port %d:' % (endpoint.host, endpoint.port))
try:
  with minepeek.ServerConnection(endpoint, timeout=5) as conn:
    status = conn.status()
    latency = conn.ping()
except minepeek.MinePeekError as e:
  print('Server is offline! (%s: %s)' % (e.status, e))
else:
  print('Server is online running version %s with %s out of %s players.' % (status.version, status.current_players, status.max_players))
  print('Message of the day: %s' % status.motd)
  print('Message of the day without formatting: %s' % status.stripped_motd)
  print('Latency: %sms' % latency)
