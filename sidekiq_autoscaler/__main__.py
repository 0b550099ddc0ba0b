from sidekiq_autoscaler.main import main

main()
