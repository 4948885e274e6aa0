from mapache.main import main

main()
